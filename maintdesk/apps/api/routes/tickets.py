from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import Principal, get_db, require_org_role
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, get_request_id, success_response
from maintdesk.services.tickets import update_ticket_status


router = APIRouter(prefix="/organizations/{org_id}/tickets", tags=["tickets"], responses=DEFAULT_ERROR_RESPONSES)


class TicketResponse(BaseModel):
    id: str
    org_id: str
    type: str
    title: str
    status: str
    priority: str | None = None
    site_id: str | None = None
    department_id: str | None = None
    asset_id: str | None = None
    template_id: str | None = None
    scheduled_for: datetime | None = None
    source: str | None = None
    checklist: list[Any] = []
    preventive_paused_by_entitlement: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TicketStatusRequest(BaseModel):
    status: str

    model_config = {"extra": "forbid"}


def ticket_response(ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        org_id=ticket.org_id,
        type=ticket.type,
        title=ticket.title,
        status=ticket.status,
        priority=ticket.priority,
        site_id=ticket.site_id,
        department_id=ticket.department_id,
        asset_id=ticket.asset_id,
        template_id=ticket.template_id,
        scheduled_for=ticket.scheduled_for,
        source=ticket.source,
        checklist=list(ticket.checklist_json or []),
        preventive_paused_by_entitlement=bool(ticket.preventive_paused_by_entitlement),
        created_at=ticket.created_at,
        updated_at=ticket.updated_at,
    )


@router.patch("/{ticket_id}", response_model=SuccessEnvelope[TicketResponse])
async def patch_ticket_status(
    org_id: str,
    ticket_id: str,
    request: Request,
    payload: TicketStatusRequest,
    principal: Principal = Depends(require_org_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ticket = await update_ticket_status(
        db,
        org_id=org_id,
        ticket_id=ticket_id,
        status=payload.status,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=ticket_response(ticket))
