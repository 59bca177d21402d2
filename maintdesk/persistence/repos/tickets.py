from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.domain.models import Ticket


TERMINAL_STATUSES = frozenset({"resolved", "closed", "canceled"})
PAUSED_STATUS = "paused"


async def get_ticket_for_org(
    session: AsyncSession, org_id: str, ticket_id: str, *, for_update: bool = False
) -> Ticket | None:
    stmt = select(Ticket).where(Ticket.id == ticket_id, Ticket.org_id == org_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_pausable_preventive_page(
    session: AsyncSession, org_id: str, *, after_id: str | None, limit: int
) -> list[Ticket]:
    # Terminal and already-paused tickets are excluded so a rerun touches nothing twice.
    stmt = (
        select(Ticket)
        .where(
            Ticket.org_id == org_id,
            Ticket.type == "preventive",
            Ticket.template_id.is_not(None),
            Ticket.preventive_paused_by_entitlement.is_(False),
            Ticket.status.not_in(sorted(TERMINAL_STATUSES | {PAUSED_STATUS})),
        )
        .order_by(Ticket.id)
        .limit(limit)
    )
    if after_id is not None:
        stmt = stmt.where(Ticket.id > after_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_paused_preventive_page(
    session: AsyncSession, org_id: str, *, after_id: str | None, limit: int
) -> list[Ticket]:
    stmt = (
        select(Ticket)
        .where(
            Ticket.org_id == org_id,
            Ticket.preventive_paused_by_entitlement.is_(True),
        )
        .order_by(Ticket.id)
        .limit(limit)
    )
    if after_id is not None:
        stmt = stmt.where(Ticket.id > after_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_tickets_for_template(session: AsyncSession, org_id: str, template_id: str) -> list[Ticket]:
    result = await session.execute(
        select(Ticket)
        .where(Ticket.org_id == org_id, Ticket.template_id == template_id)
        .order_by(Ticket.scheduled_for, Ticket.id)
    )
    return list(result.scalars().all())
