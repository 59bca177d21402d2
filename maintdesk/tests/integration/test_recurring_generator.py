from __future__ import annotations

from datetime import datetime, timezone

import pytest

from maintdesk.core.errors import FeatureNotEnabled, NotFoundError, ValidationError
from maintdesk.domain.models import PreventiveTemplate, Ticket
from maintdesk.persistence.db import SessionLocal
from maintdesk.services.scheduling import generate_for_template, generate_now, run_recurring_generation, ticket_id_for
from maintdesk.services.scheduling import generator
from maintdesk.tests.utils.factories import (
    audit_event_types,
    count_rows,
    create_org,
    create_site_and_department,
    create_template_row,
    load_entitlement,
    load_row,
    utc,
)


DUE = utc(2026, 3, 2, 7, 0)
NOW = utc(2026, 3, 2, 7, 5)


async def _org_with_template(**org_kwargs) -> tuple[str, str]:
    org_kwargs.setdefault("active_preventives_count", 1)
    org_id = await create_org(**org_kwargs)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id,
        site_id=site_id,
        department_id=department_id,
        next_run_at=DUE,
        checklist=["Check pressure", {"text": "Bleed radiators"}],
    )
    return org_id, template_id


async def _generate(template_id: str, now: datetime = NOW):
    async with SessionLocal() as session:
        return await generate_for_template(session, template_id, now=now)


@pytest.mark.asyncio
async def test_due_occurrence_creates_one_ticket_and_advances_schedule() -> None:
    org_id, template_id = await _org_with_template()

    result = await _generate(template_id)

    assert result.outcome == "created"
    assert result.ticket_id == ticket_id_for(template_id, DUE)
    ticket = await load_row(Ticket, result.ticket_id)
    assert ticket.org_id == org_id
    assert ticket.scheduled_for == DUE
    assert ticket.source == "recurring"
    assert ticket.created_by == "system"
    assert ticket.status == "new"
    assert ticket.checklist_json == [
        {"text": "Check pressure", "done": False},
        {"text": "Bleed radiators", "done": False},
    ]
    assert ticket.template_snapshot_json["name"] == "Boiler inspection"

    template = await load_row(PreventiveTemplate, template_id)
    assert template.last_run_at == DUE
    assert template.next_run_at == utc(2026, 3, 3, 7, 0)
    assert (await load_entitlement(org_id)).active_preventives_count == 2
    assert "preventive.ticket.generated" in await audit_event_types(org_id)


@pytest.mark.asyncio
async def test_rerun_after_advance_is_not_due() -> None:
    _org_id, template_id = await _org_with_template()
    await _generate(template_id)

    again = await _generate(template_id)

    assert again.outcome == "not_yet_due"
    assert await count_rows(Ticket) == 1


@pytest.mark.asyncio
async def test_replayed_occurrence_never_duplicates() -> None:
    org_id, template_id = await _org_with_template()
    await _generate(template_id)
    # Rewind progress as if an overlapping sweep read the template before the first commit.
    async with SessionLocal() as session:
        template = await session.get(PreventiveTemplate, template_id)
        template.next_run_at = DUE
        template.last_run_at = None
        await session.commit()

    replay = await _generate(template_id)

    assert replay.outcome == "already_generated"
    assert await count_rows(Ticket) == 1
    assert (await load_entitlement(org_id)).active_preventives_count == 2
    template = await load_row(PreventiveTemplate, template_id)
    assert template.next_run_at == utc(2026, 3, 3, 7, 0)


@pytest.mark.asyncio
async def test_future_occurrence_is_left_alone() -> None:
    _org_id, template_id = await _org_with_template()

    result = await _generate(template_id, now=utc(2026, 3, 2, 6, 0))

    assert result.outcome == "not_yet_due"
    assert result.next_run_at == DUE
    assert await count_rows(Ticket) == 0


@pytest.mark.asyncio
async def test_quota_denial_keeps_schedule_for_next_tick() -> None:
    org_id, template_id = await _org_with_template(
        limits={"max_active_preventives": 1}, active_preventives_count=1
    )

    result = await _generate(template_id)

    assert result.outcome == "quota_exceeded"
    assert result.error_code == "QUOTA_EXCEEDED"
    assert await count_rows(Ticket) == 0
    template = await load_row(PreventiveTemplate, template_id)
    assert template.next_run_at == DUE
    assert template.last_run_at is None
    assert result.org_id == org_id
    assert "preventive.ticket.denied" in await audit_event_types(org_id)


@pytest.mark.asyncio
async def test_feature_denial_at_consume_has_its_own_outcome(monkeypatch) -> None:
    org_id, template_id = await _org_with_template()

    class _DenyingEnforcer:
        def consume(self, state, kind, *, now=None):
            raise FeatureNotEnabled("PREVENTIVES", plan_id=state.entitlement.plan_id)

    monkeypatch.setattr(generator, "get_quota_enforcer", lambda: _DenyingEnforcer())

    result = await _generate(template_id)

    assert result.outcome == "feature_not_enabled"
    assert result.error_code == "FEATURE_NOT_ENABLED"
    assert result.org_id == org_id
    assert "preventive.ticket.denied" in await audit_event_types(org_id)
    assert (await load_entitlement(org_id)).active_preventives_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("org_kwargs", "outcome"),
    [
        ({"preventives_paused": True, "paused_reason": "feature_lost"}, "paused"),
        ({"plan_id": "free"}, "no_entitlement"),
        ({"plan_id": "basic"}, "no_entitlement"),
        ({"status": "canceled"}, "no_entitlement"),
        ({"org_status": "suspended"}, "organization_inactive"),
    ],
)
async def test_gated_organizations_generate_nothing(org_kwargs: dict, outcome: str) -> None:
    _org_id, template_id = await _org_with_template(**org_kwargs)

    result = await _generate(template_id)

    assert result.outcome == outcome
    assert await count_rows(Ticket) == 0


@pytest.mark.asyncio
async def test_demo_tenant_generates_on_free_plan() -> None:
    _org_id, template_id = await _org_with_template(plan_id="free", org_type="demo")

    result = await _generate(template_id)

    assert result.outcome == "created"


@pytest.mark.asyncio
async def test_template_without_site_is_skipped() -> None:
    org_id = await create_org(active_preventives_count=1)
    template_id = await create_template_row(org_id, next_run_at=DUE)

    result = await _generate(template_id)

    assert result.outcome == "inactive_template"


@pytest.mark.asyncio
async def test_one_off_date_schedule_runs_once() -> None:
    org_id = await create_org(active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id,
        site_id=site_id,
        department_id=department_id,
        schedule_type="date",
        schedule_date=DUE,
    )

    first = await _generate(template_id)
    second = await _generate(template_id, now=utc(2026, 3, 9))

    assert first.outcome == "created"
    assert first.next_run_at is None
    assert second.outcome == "exhausted"
    assert await count_rows(Ticket) == 1


@pytest.mark.asyncio
async def test_sweep_covers_every_automatic_template() -> None:
    org_id, first = await _org_with_template()
    site_id, department_id = await create_site_and_department(org_id)
    second = await create_template_row(org_id, site_id=site_id, department_id=department_id, next_run_at=DUE)
    await create_template_row(org_id, site_id=site_id, department_id=department_id, automatic=False)

    summary = await run_recurring_generation(now=NOW)

    assert summary.scanned == 2
    assert summary.created == 2
    assert summary.failed == 0
    assert await count_rows(Ticket, Ticket.template_id.in_([first, second])) == 2

    rerun = await run_recurring_generation(now=NOW)
    assert rerun.created == 0
    assert rerun.outcomes == {"not_yet_due": 2}


@pytest.mark.asyncio
async def test_generate_now_creates_manual_ticket_without_moving_schedule() -> None:
    org_id, template_id = await _org_with_template()

    async with SessionLocal() as session:
        result = await generate_now(session, org_id=org_id, template_id=template_id, actor_id="user-1", now=NOW)

    assert result.outcome == "created"
    assert result.scheduled_for == utc(2026, 3, 2, 7, 5)
    ticket = await load_row(Ticket, result.ticket_id)
    assert ticket.source == "manual"
    assert ticket.created_by == "user-1"
    template = await load_row(PreventiveTemplate, template_id)
    assert template.next_run_at == DUE
    assert template.last_run_at is None

    async with SessionLocal() as session:
        again = await generate_now(session, org_id=org_id, template_id=template_id, now=NOW)
    assert again.outcome == "already_generated"
    assert await count_rows(Ticket) == 1


@pytest.mark.asyncio
async def test_generate_now_rejects_missing_and_archived_templates() -> None:
    org_id = await create_org()
    site_id, department_id = await create_site_and_department(org_id)
    archived = await create_template_row(org_id, site_id=site_id, department_id=department_id, status="archived")

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await generate_now(session, org_id=org_id, template_id="tpl_missing", now=NOW)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await generate_now(session, org_id=org_id, template_id=archived, now=NOW)


def test_ticket_identity_is_stable_per_occurrence() -> None:
    occurrence = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)
    assert ticket_id_for("tpl_a", occurrence) == ticket_id_for("tpl_a", occurrence.replace(microsecond=500))
    assert ticket_id_for("tpl_a", occurrence) != ticket_id_for("tpl_b", occurrence)
    assert ticket_id_for("tpl_a", occurrence) != ticket_id_for("tpl_a", utc(2026, 3, 3, 7, 0))


@pytest.mark.asyncio
async def test_generation_locks_organization_before_template(monkeypatch) -> None:
    org_id, template_id = await _org_with_template()
    locked: list[str] = []
    load_state = generator.load_entitlement_state
    get_template = generator.template_repo.get_template
    get_template_for_org = generator.template_repo.get_template_for_org

    async def spy_load_state(session, org, *, for_update=False):
        if for_update:
            locked.append("organization")
        return await load_state(session, org, for_update=for_update)

    async def spy_get_template(session, tpl, *, for_update=False):
        if for_update:
            locked.append("template")
        return await get_template(session, tpl, for_update=for_update)

    async def spy_get_template_for_org(session, org, tpl, *, for_update=False):
        if for_update:
            locked.append("template")
        return await get_template_for_org(session, org, tpl, for_update=for_update)

    monkeypatch.setattr(generator, "load_entitlement_state", spy_load_state)
    monkeypatch.setattr(generator.template_repo, "get_template", spy_get_template)
    monkeypatch.setattr(generator.template_repo, "get_template_for_org", spy_get_template_for_org)

    assert (await _generate(template_id)).outcome == "created"
    async with SessionLocal() as session:
        manual = await generate_now(session, org_id=org_id, template_id=template_id, now=utc(2026, 3, 2, 11, 0))

    assert manual.outcome == "created"
    assert locked == ["organization", "template", "organization", "template"]
