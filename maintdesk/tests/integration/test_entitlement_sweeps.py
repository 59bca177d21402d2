from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from maintdesk.core.config import get_settings
from maintdesk.domain.models import Ticket
from maintdesk.persistence.db import SessionLocal, engine
from maintdesk.services.scheduling import (
    pause_organization,
    resume_organization,
    run_demo_expiry_sweep,
    run_feature_loss_sweep,
)
from maintdesk.tests.utils.factories import (
    add_provider_record,
    count_rows,
    create_org,
    create_template_row,
    create_ticket_rows,
    load_organization,
    load_row,
    utc,
)


NOW = utc(2026, 3, 1, 3, 0)


def _rejecting_session_factory(fail_on: int) -> async_sessionmaker[AsyncSession]:
    # The Nth commit through this factory fails like a rejected store write.
    commits = {"count": 0}

    class _RejectingSession(AsyncSession):
        async def commit(self) -> None:
            commits["count"] += 1
            if commits["count"] == fail_on:
                raise OperationalError("COMMIT", {}, Exception("write rejected"))
            await super().commit()

    return async_sessionmaker(engine, class_=_RejectingSession, expire_on_commit=False)


async def _paused_ticket_count(org_id: str) -> int:
    return await count_rows(Ticket, Ticket.org_id == org_id, Ticket.preventive_paused_by_entitlement.is_(True))


@pytest.mark.asyncio
async def test_pause_flags_org_and_open_recurring_tickets_once() -> None:
    org_id = await create_org(plan_id="free")
    template_id = await create_template_row(org_id)
    await create_ticket_rows(org_id, template_id=template_id, count=2, status="new", prefix="open")
    await create_ticket_rows(org_id, template_id=template_id, count=1, status="in_progress", prefix="work")
    await create_ticket_rows(org_id, template_id=template_id, count=1, status="resolved", prefix="done")
    await create_ticket_rows(org_id, template_id=None, count=1, ticket_type="corrective", prefix="fix")

    result = await pause_organization(org_id, reason="feature_lost", now=NOW)

    assert result.newly_paused is True
    assert result.tickets_paused == 3
    assert result.batches_failed == 0
    organization = await load_organization(org_id)
    assert organization.preventives_paused is True
    assert organization.preventives_paused_reason == "feature_lost"
    assert organization.preventives_paused_at == NOW
    work = await load_row(Ticket, "work_0000")
    assert work.status == "paused"
    assert work.status_before_pause == "in_progress"
    assert (await load_row(Ticket, "done_0000")).status == "resolved"
    assert (await load_row(Ticket, "fix_0000")).status == "new"

    rerun = await pause_organization(org_id, reason="feature_lost", now=NOW + timedelta(hours=1))
    assert rerun.newly_paused is False
    assert rerun.tickets_paused == 0
    assert (await load_organization(org_id)).preventives_paused_at == NOW


@pytest.mark.asyncio
async def test_failed_batch_is_skipped_and_later_batches_continue(monkeypatch) -> None:
    monkeypatch.setenv("SWEEP_BATCH_SIZE", "50")
    get_settings.cache_clear()
    org_id = await create_org(plan_id="free")
    template_id = await create_template_row(org_id)
    await create_ticket_rows(org_id, template_id=template_id, count=120)

    # Commit 1 flags the organization; commit 2 is the first ticket batch.
    result = await pause_organization(
        org_id, reason="feature_lost", now=NOW, session_factory=_rejecting_session_factory(fail_on=2)
    )

    assert result.newly_paused is True
    assert result.tickets_paused == 70
    assert result.batches_failed == 1
    assert await _paused_ticket_count(org_id) == 70

    retry = await pause_organization(org_id, reason="feature_lost", now=NOW)
    assert retry.newly_paused is False
    assert retry.tickets_paused == 50
    assert await _paused_ticket_count(org_id) == 120


@pytest.mark.asyncio
async def test_resume_restores_pre_pause_statuses() -> None:
    org_id = await create_org(plan_id="free")
    template_id = await create_template_row(org_id)
    await create_ticket_rows(org_id, template_id=template_id, count=1, status="on_hold", prefix="hold")
    await create_ticket_rows(org_id, template_id=template_id, count=2, status="new", prefix="open")
    await pause_organization(org_id, reason="feature_lost", now=NOW)

    async with SessionLocal() as session:
        restored = await resume_organization(session, org_id, now=NOW)

    assert restored == 3
    assert (await load_row(Ticket, "hold_0000")).status == "on_hold"
    assert (await load_row(Ticket, "open_0001")).status == "new"
    assert await _paused_ticket_count(org_id) == 0
    organization = await load_organization(org_id)
    assert organization.preventives_paused is False


@pytest.mark.asyncio
async def test_demo_expiry_sweep_pauses_only_expired_demos() -> None:
    expired = await create_org(plan_id="free", org_type="demo", demo_expires_at=NOW - timedelta(days=1))
    running = await create_org(plan_id="free", org_type="demo", demo_expires_at=NOW + timedelta(days=1))
    await create_org(plan_id="free")

    summary = await run_demo_expiry_sweep(now=NOW)

    assert summary.organizations_scanned == 2
    assert summary.organizations_paused == 1
    assert (await load_organization(expired)).preventives_paused_reason == "demo_expired"
    assert (await load_organization(running)).preventives_paused is False

    rerun = await run_demo_expiry_sweep(now=NOW)
    assert rerun.organizations_paused == 0


@pytest.mark.asyncio
async def test_feature_loss_sweep_pauses_orgs_without_recurring_work() -> None:
    free = await create_org(plan_id="free")
    lapsed = await create_org(plan_id="pro", status="canceled")
    trial_over = await create_org(plan_id="pro", status="trialing", trial_ends_at=NOW - timedelta(hours=1))
    entitled = await create_org(plan_id="starter")
    demo = await create_org(plan_id="free", org_type="demo", demo_expires_at=NOW + timedelta(days=5))
    deleted = await create_org(plan_id="free", org_status="deleted")

    summary = await run_feature_loss_sweep(now=NOW)

    assert summary.organizations_scanned == 6
    assert summary.organizations_paused == 3
    for org_id in (free, lapsed, trial_over):
        organization = await load_organization(org_id)
        assert organization.preventives_paused is True
        assert organization.preventives_paused_reason == "feature_lost"
    for org_id in (entitled, demo, deleted):
        assert (await load_organization(org_id)).preventives_paused is False
    assert summary.as_dict()["job"] == "feature_loss_sweep"


@pytest.mark.asyncio
async def test_feature_loss_sweep_respects_provider_fallback() -> None:
    org_id = await create_org(plan_id="free")
    await add_provider_record(org_id, "apple_app_store", plan_id="pro", updated_at=NOW - timedelta(days=1))

    summary = await run_feature_loss_sweep(now=NOW)

    assert summary.organizations_paused == 0
    assert (await load_organization(org_id)).preventives_paused is False
