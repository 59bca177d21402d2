from __future__ import annotations

from datetime import timedelta

import pytest

from maintdesk.core.errors import (
    EntitlementInactive,
    FeatureNotEnabled,
    NotFoundError,
    QuotaExceeded,
    ReferenceNotFound,
    ValidationError,
)
from maintdesk.domain.models import PreventiveTemplate, Ticket
from maintdesk.persistence.db import SessionLocal
from maintdesk.services.scheduling.calculator import ScheduleSpec
from maintdesk.services.templates import (
    TemplateDraft,
    create_template,
    duplicate_template,
    list_template_tickets,
    update_template,
    validate_schedule,
)
from maintdesk.tests.utils.factories import (
    audit_event_types,
    count_rows,
    create_org,
    create_site_and_department,
    create_template_row,
    create_ticket_rows,
    load_entitlement,
    load_row,
    utc,
)


NOW = utc(2026, 3, 2, 9, 0)


@pytest.mark.parametrize(
    "spec",
    [
        ScheduleSpec(type="hourly"),
        ScheduleSpec(type="daily", time_of_day="7am"),
        ScheduleSpec(type="daily", timezone="Mars/Olympus"),
        ScheduleSpec(type="daily", days_of_week=(1,)),
        ScheduleSpec(type="weekly", days_of_week=(0, 8)),
        ScheduleSpec(type="weekly", days_of_week=()),
        ScheduleSpec(type="monthly", day_of_month=32),
        ScheduleSpec(type="weekly", day_of_month=3),
        ScheduleSpec(type="date"),
    ],
)
def test_malformed_schedules_are_rejected(spec: ScheduleSpec) -> None:
    with pytest.raises(ValidationError):
        validate_schedule(spec)


def test_weekly_days_are_normalized() -> None:
    spec = validate_schedule(ScheduleSpec(type="weekly", days_of_week=(5, 1, 5)))
    assert spec.days_of_week == (1, 5)


async def _create(org_id: str, draft: TemplateDraft) -> PreventiveTemplate:
    async with SessionLocal() as session:
        return await create_template(session, org_id=org_id, draft=draft, actor_id="user-1", now=NOW)


async def _update(org_id: str, template_id: str, **changes) -> PreventiveTemplate:
    async with SessionLocal() as session:
        return await update_template(
            session, org_id=org_id, template_id=template_id, changes=changes, actor_id="user-1", now=NOW
        )


@pytest.mark.asyncio
async def test_active_automatic_template_consumes_a_slot_and_is_scheduled() -> None:
    org_id = await create_org()
    site_id, department_id = await create_site_and_department(org_id)

    template = await _create(
        org_id,
        TemplateDraft(
            name="  Chiller service ",
            schedule=ScheduleSpec(type="weekly", days_of_week=(1,), time_of_day="06:30", timezone="UTC"),
            automatic=True,
            site_id=site_id,
            department_id=department_id,
        ),
    )

    stored = await load_row(PreventiveTemplate, template.id)
    assert stored.name == "Chiller service"
    # 2026-03-02 is a Monday; 06:30 has already passed, so the next Monday.
    assert stored.next_run_at == utc(2026, 3, 9, 6, 30)
    assert (await load_entitlement(org_id)).active_preventives_count == 1
    assert "preventive_template.created" in await audit_event_types(org_id)


@pytest.mark.asyncio
async def test_paused_or_manual_templates_are_not_scheduled() -> None:
    org_id = await create_org()

    paused = await _create(org_id, TemplateDraft(name="Later", schedule=ScheduleSpec(type="daily"), status="paused"))
    manual = await _create(org_id, TemplateDraft(name="On demand", schedule=ScheduleSpec(type="daily")))

    assert (await load_row(PreventiveTemplate, paused.id)).next_run_at is None
    assert (await load_row(PreventiveTemplate, manual.id)).next_run_at is None
    assert (await load_entitlement(org_id)).active_preventives_count == 1


@pytest.mark.asyncio
async def test_automatic_template_needs_site_and_department() -> None:
    org_id = await create_org()
    with pytest.raises(ValidationError):
        await _create(org_id, TemplateDraft(name="Auto", schedule=ScheduleSpec(type="daily"), automatic=True))
    with pytest.raises(ReferenceNotFound):
        await _create(
            org_id,
            TemplateDraft(
                name="Auto",
                schedule=ScheduleSpec(type="daily"),
                automatic=True,
                site_id="site_missing",
                department_id="dept_missing",
            ),
        )
    assert (await load_entitlement(org_id)).active_preventives_count == 0


@pytest.mark.asyncio
async def test_denied_creation_is_audited_and_leaves_usage_untouched() -> None:
    full = await create_org(plan_id="free", active_preventives_count=3)
    no_feature = await create_org(plan_id="free")
    lapsed = await create_org(status="trialing", trial_ends_at=NOW - timedelta(days=1))
    draft = TemplateDraft(name="Weekly check", schedule=ScheduleSpec(type="weekly", days_of_week=(1,)))

    with pytest.raises(QuotaExceeded) as excinfo:
        await _create(full, draft)
    assert excinfo.value.details == {"kind": "preventives", "limit": 3, "used": 3}
    with pytest.raises(FeatureNotEnabled):
        await _create(no_feature, draft)
    with pytest.raises(EntitlementInactive):
        await _create(lapsed, draft)

    assert (await load_entitlement(full)).active_preventives_count == 3
    assert await count_rows(PreventiveTemplate) == 0
    for org_id in (full, no_feature, lapsed):
        assert await audit_event_types(org_id) == ["preventive_template.quota_denied"]


@pytest.mark.asyncio
async def test_status_transitions_move_slots() -> None:
    org_id = await create_org(active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id, site_id=site_id, department_id=department_id, next_run_at=utc(2026, 3, 3, 7, 0)
    )

    await _update(org_id, template_id, status="paused")
    assert (await load_entitlement(org_id)).active_preventives_count == 0

    await _update(org_id, template_id, status="active")
    assert (await load_entitlement(org_id)).active_preventives_count == 1

    await _update(org_id, template_id, name="Renamed")
    assert (await load_entitlement(org_id)).active_preventives_count == 1
    assert (await load_row(PreventiveTemplate, template_id)).name == "Renamed"


@pytest.mark.asyncio
async def test_reactivation_is_gated_by_quota() -> None:
    org_id = await create_org(limits={"max_active_preventives": 1}, active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(org_id, site_id=site_id, department_id=department_id, status="paused")

    with pytest.raises(QuotaExceeded):
        await _update(org_id, template_id, status="active")

    assert (await load_row(PreventiveTemplate, template_id)).status == "paused"
    assert "preventive_template.quota_denied" in await audit_event_types(org_id)


@pytest.mark.asyncio
async def test_schedule_change_restarts_progress() -> None:
    org_id = await create_org(active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id,
        site_id=site_id,
        department_id=department_id,
        next_run_at=utc(2026, 3, 3, 7, 0),
        last_run_at=utc(2026, 3, 2, 7, 0),
    )

    await _update(org_id, template_id, schedule={"type": "monthly", "day_of_month": 15, "time_of_day": "10:00"})

    template = await load_row(PreventiveTemplate, template_id)
    assert template.schedule_type == "monthly"
    assert template.schedule_timezone is None
    assert template.last_run_at is None
    assert template.next_run_at == utc(2026, 3, 15, 10, 0)


@pytest.mark.asyncio
async def test_turning_off_automatic_clears_next_run() -> None:
    org_id = await create_org(active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id, site_id=site_id, department_id=department_id, next_run_at=utc(2026, 3, 3, 7, 0)
    )

    await _update(org_id, template_id, automatic=False)

    assert (await load_row(PreventiveTemplate, template_id)).next_run_at is None


@pytest.mark.asyncio
async def test_update_of_unknown_template_is_not_found() -> None:
    org_id = await create_org()
    with pytest.raises(NotFoundError):
        await _update(org_id, "tpl_missing", name="Nope")


@pytest.mark.asyncio
async def test_duplicate_starts_paused_without_progress() -> None:
    org_id = await create_org(active_preventives_count=1)
    site_id, department_id = await create_site_and_department(org_id)
    template_id = await create_template_row(
        org_id,
        site_id=site_id,
        department_id=department_id,
        next_run_at=utc(2026, 3, 3, 7, 0),
        last_run_at=utc(2026, 3, 2, 7, 0),
    )

    async with SessionLocal() as session:
        copy = await duplicate_template(session, org_id=org_id, template_id=template_id, actor_id="user-1", now=NOW)

    stored = await load_row(PreventiveTemplate, copy.id)
    assert stored.id != template_id
    assert stored.name == "Boiler inspection (copy)"
    assert stored.status == "paused"
    assert stored.next_run_at is None
    assert stored.last_run_at is None
    assert stored.schedule_time_of_day == "07:00"
    assert (await load_entitlement(org_id)).active_preventives_count == 1


@pytest.mark.asyncio
async def test_template_ticket_history_is_scoped_to_the_template() -> None:
    org_id = await create_org()
    template_id = await create_template_row(org_id)
    other_id = await create_template_row(org_id)
    await create_ticket_rows(org_id, template_id=template_id, count=2, prefix="mine")
    await create_ticket_rows(org_id, template_id=other_id, count=1, prefix="other")

    async with SessionLocal() as session:
        tickets = await list_template_tickets(session, org_id=org_id, template_id=template_id)

    assert sorted(ticket.id for ticket in tickets) == ["mine_0000", "mine_0001"]
    assert await count_rows(Ticket) == 3
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await list_template_tickets(session, org_id="org-elsewhere", template_id=template_id)
