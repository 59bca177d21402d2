from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.errors import NotFoundError, TransientStoreError, ValidationError
from maintdesk.domain.models import Ticket
from maintdesk.persistence.repos import tickets as ticket_repo
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import load_entitlement_state
from maintdesk.services.quota import KIND_PREVENTIVES, get_quota_enforcer


logger = logging.getLogger(__name__)

# "paused" is owned by the entitlement sweeps and cannot be set by users.
TICKET_STATUSES = ("new", "in_progress", "on_hold", "resolved", "closed", "canceled")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def holds_preventive_slot(ticket: Ticket) -> bool:
    # Generated preventive tickets occupy an active-preventive slot until they finish.
    return (
        ticket.type == "preventive"
        and ticket.template_id is not None
        and ticket.status not in ticket_repo.TERMINAL_STATUSES
    )


async def update_ticket_status(
    session: AsyncSession,
    *,
    org_id: str,
    ticket_id: str,
    status: str,
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> Ticket:
    """Move a ticket to a new workflow status.

    A generated preventive ticket that reaches a terminal status gives its
    active-preventive slot back. Tickets paused by an entitlement sweep only
    accept terminal statuses until the organization is resumed.
    """
    if status not in TICKET_STATUSES:
        raise ValidationError(f"Unsupported ticket status: {status}", field="status")
    now = now or _utc_now()
    try:
        async with session.begin():
            state = await load_entitlement_state(session, org_id, for_update=True)
            ticket = await ticket_repo.get_ticket_for_org(session, org_id, ticket_id, for_update=True)
            if ticket is None:
                raise NotFoundError("ticket", ticket_id)
            terminal = status in ticket_repo.TERMINAL_STATUSES
            if ticket.preventive_paused_by_entitlement and not terminal:
                raise ValidationError("Ticket is paused until the subscription allows recurring work", field="status")

            previous = ticket.status
            released = holds_preventive_slot(ticket) and terminal
            if released:
                get_quota_enforcer().release(state, KIND_PREVENTIVES, now=now)
            ticket.status = status
            ticket.updated_at = now
            if ticket.preventive_paused_by_entitlement:
                ticket.preventive_paused_by_entitlement = False
                ticket.status_before_pause = None
                ticket.paused_at = None
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="user",
                actor_id=actor_id,
                event_type="ticket.status_changed",
                outcome="success",
                resource_type="ticket",
                resource_id=ticket_id,
                request_id=request_id,
                metadata={"from": previous, "to": status, "slot_released": released},
            )
    except DBAPIError as exc:
        raise TransientStoreError("Ticket could not be updated") from exc
    logger.info("ticket_status_changed ticket_id=%s from=%s to=%s", ticket_id, previous, status)
    return ticket
