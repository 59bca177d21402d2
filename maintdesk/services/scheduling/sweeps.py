from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from maintdesk.core.config import get_settings
from maintdesk.core.errors import EntitlementNotFound
from maintdesk.domain.models import Organization
from maintdesk.persistence.db import SessionLocal
from maintdesk.persistence.repos import organizations as org_repo
from maintdesk.persistence.repos import tickets as ticket_repo
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import load_entitlement_state
from maintdesk.services.plan_catalog import FEATURE_PREVENTIVES
from maintdesk.services.quota import recurring_generation_granted


logger = logging.getLogger(__name__)

JOB_DEMO_EXPIRY = "demo_expiry_sweep"
JOB_FEATURE_LOSS = "feature_loss_sweep"

PAUSE_REASON_DEMO_EXPIRED = "demo_expired"
PAUSE_REASON_FEATURE_LOST = "feature_lost"

_MIN_BATCH = 50
_MAX_BATCH = 500

SessionFactory = async_sessionmaker[AsyncSession] | Callable[[], AsyncSession]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def batch_size() -> int:
    # Bounded write batches; the store rejects oversized commits.
    return max(_MIN_BATCH, min(_MAX_BATCH, int(get_settings().sweep_batch_size)))


@dataclass
class SweepSummary:
    job: str
    organizations_scanned: int = 0
    organizations_paused: int = 0
    tickets_paused: int = 0
    batches_failed: int = 0
    organizations_failed: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "organizations_scanned": self.organizations_scanned,
            "organizations_paused": self.organizations_paused,
            "tickets_paused": self.tickets_paused,
            "batches_failed": self.batches_failed,
            "organizations_failed": self.organizations_failed,
        }


@dataclass(frozen=True)
class PauseResult:
    newly_paused: bool
    tickets_paused: int
    batches_failed: int


async def _flag_organization(
    session_factory: SessionFactory, org_id: str, *, reason: str, now: datetime
) -> bool:
    async with session_factory() as session:
        organization = await org_repo.get_organization(session, org_id, for_update=True)
        if organization is None or organization.preventives_paused:
            await session.rollback()
            return False
        organization.preventives_paused = True
        organization.preventives_paused_reason = reason
        organization.preventives_paused_at = now
        await record_event(
            session=session,
            org_id=org_id,
            actor_type="system",
            actor_id="entitlement_sweep",
            event_type="preventive.organization.paused",
            outcome="success",
            resource_type="organization",
            resource_id=org_id,
            metadata={"reason": reason},
        )
        await session.commit()
        return True


async def pause_organization(
    org_id: str,
    *,
    reason: str,
    now: datetime | None = None,
    session_factory: SessionFactory = SessionLocal,
) -> PauseResult:
    """Stop recurring generation for a tenant and pause its open recurring tickets.

    The organization flag is committed first so the generator stops at once.
    Tickets are then paused in id-ordered batches, one commit each; a failed
    batch is logged and left for the next run while later batches continue.
    """
    now = now or _utc_now()
    newly_paused = await _flag_organization(session_factory, org_id, reason=reason, now=now)
    size = batch_size()
    paused = 0
    failed = 0
    cursor: str | None = None
    while True:
        async with session_factory() as session:
            page = await ticket_repo.list_pausable_preventive_page(session, org_id, after_id=cursor, limit=size)
            if not page:
                break
            for ticket in page:
                ticket.status_before_pause = ticket.status
                ticket.status = ticket_repo.PAUSED_STATUS
                ticket.preventive_paused_by_entitlement = True
                ticket.paused_at = now
            cursor = page[-1].id
            try:
                await session.commit()
                paused += len(page)
            except SQLAlchemyError as exc:
                await session.rollback()
                failed += 1
                logger.warning(
                    "sweep_pause_batch_failed org_id=%s after_id=%s",
                    org_id,
                    cursor,
                    exc_info=exc,
                )
        if len(page) < size:
            break
    if newly_paused or paused:
        logger.info(
            "organization_preventives_paused org_id=%s reason=%s tickets=%s failed_batches=%s",
            org_id,
            reason,
            paused,
            failed,
        )
    return PauseResult(newly_paused=newly_paused, tickets_paused=paused, batches_failed=failed)


async def resume_organization(
    session: AsyncSession, org_id: str, *, now: datetime | None = None
) -> int:
    # Clear the tenant flag and restore paused recurring tickets to their pre-pause status.
    now = now or _utc_now()
    organization = await org_repo.get_organization(session, org_id, for_update=True)
    if organization is None:
        await session.rollback()
        return 0
    reason = organization.preventives_paused_reason
    organization.preventives_paused = False
    organization.preventives_paused_reason = None
    organization.preventives_paused_at = None
    await record_event(
        session=session,
        org_id=org_id,
        actor_type="system",
        actor_id="entitlement_sweep",
        event_type="preventive.organization.resumed",
        outcome="success",
        resource_type="organization",
        resource_id=org_id,
        metadata={"previous_reason": reason},
    )
    await session.commit()

    size = batch_size()
    restored = 0
    while True:
        # Restored tickets drop out of the paused filter, so each page starts from the front.
        page = await ticket_repo.list_paused_preventive_page(session, org_id, after_id=None, limit=size)
        if not page:
            break
        for ticket in page:
            ticket.status = ticket.status_before_pause or "new"
            ticket.status_before_pause = None
            ticket.preventive_paused_by_entitlement = False
            ticket.paused_at = None
            ticket.updated_at = now
        await session.commit()
        restored += len(page)
        if len(page) < size:
            break
    logger.info("organization_preventives_resumed org_id=%s tickets=%s", org_id, restored)
    return restored


def _demo_expired(organization: Organization, now: datetime) -> bool:
    return (
        organization.type == "demo"
        and organization.demo_expires_at is not None
        and organization.demo_expires_at <= now
    )


async def _sweep(
    job: str,
    *,
    now: datetime,
    session_factory: SessionFactory,
    org_type: str | None,
    decide: Callable[[AsyncSession, Organization], Any],
) -> SweepSummary:
    summary = SweepSummary(job=job)
    page_size = max(1, int(get_settings().template_page_size))
    cursor: str | None = None
    while True:
        async with session_factory() as session:
            organizations = await org_repo.list_organizations_page(
                session, after_id=cursor, limit=page_size, org_type=org_type
            )
            candidates: list[tuple[str, str]] = []
            for organization in organizations:
                summary.organizations_scanned += 1
                reason = await decide(session, organization)
                if reason is not None:
                    candidates.append((organization.id, reason))
        if not organizations:
            break
        for org_id, reason in candidates:
            try:
                result = await pause_organization(org_id, reason=reason, now=now, session_factory=session_factory)
            except Exception as exc:  # noqa: BLE001 - one tenant must not abort the sweep
                summary.organizations_failed += 1
                logger.exception("sweep_organization_failed job=%s org_id=%s", job, org_id, exc_info=exc)
                continue
            summary.organizations_paused += int(result.newly_paused)
            summary.tickets_paused += result.tickets_paused
            summary.batches_failed += result.batches_failed
        cursor = organizations[-1].id
        if len(organizations) < page_size:
            break
    logger.info(
        "entitlement_sweep_done job=%s scanned=%s paused=%s tickets=%s failed_batches=%s",
        job,
        summary.organizations_scanned,
        summary.organizations_paused,
        summary.tickets_paused,
        summary.batches_failed,
    )
    return summary


async def run_demo_expiry_sweep(
    *, now: datetime | None = None, session_factory: SessionFactory = SessionLocal
) -> SweepSummary:
    now = now or _utc_now()

    async def decide(session: AsyncSession, organization: Organization) -> str | None:
        return PAUSE_REASON_DEMO_EXPIRED if _demo_expired(organization, now) else None

    return await _sweep(JOB_DEMO_EXPIRY, now=now, session_factory=session_factory, org_type="demo", decide=decide)


async def run_feature_loss_sweep(
    *, now: datetime | None = None, session_factory: SessionFactory = SessionLocal
) -> SweepSummary:
    now = now or _utc_now()

    async def decide(session: AsyncSession, organization: Organization) -> str | None:
        # Demo tenants are governed by their demo period, not their plan.
        if organization.type == "demo" or organization.status == "deleted":
            return None
        try:
            state = await load_entitlement_state(session, organization.id)
        except EntitlementNotFound:
            return PAUSE_REASON_FEATURE_LOST
        effective = state.resolve(feature=FEATURE_PREVENTIVES, now=now)
        if recurring_generation_granted(effective, is_demo=False, now=now):
            return None
        return PAUSE_REASON_FEATURE_LOST

    return await _sweep(JOB_FEATURE_LOSS, now=now, session_factory=session_factory, org_type=None, decide=decide)
