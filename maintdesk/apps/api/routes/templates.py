from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import Principal, get_db, require_org_role
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, get_request_id, success_response
from maintdesk.apps.api.routes.tickets import TicketResponse, ticket_response
from maintdesk.services.scheduling import generate_now
from maintdesk.services.scheduling.calculator import ScheduleSpec
from maintdesk.services.templates import (
    TemplateDraft,
    create_template,
    duplicate_template,
    get_template,
    list_template_tickets,
    list_templates,
    update_template,
)


router = APIRouter(
    prefix="/organizations/{org_id}/preventive-templates",
    tags=["preventive-templates"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class ScheduleIn(BaseModel):
    type: str
    timezone: str | None = None
    time_of_day: str | None = None
    days_of_week: list[int] | None = None
    day_of_month: int | None = None
    date: datetime | None = None

    model_config = {"extra": "forbid"}


class SchedulePatch(BaseModel):
    type: str | None = None
    timezone: str | None = None
    time_of_day: str | None = None
    days_of_week: list[int] | None = None
    day_of_month: int | None = None
    date: datetime | None = None

    model_config = {"extra": "forbid"}


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    status: str = "active"
    automatic: bool = False
    priority: str = "medium"
    site_id: str | None = None
    department_id: str | None = None
    asset_id: str | None = None
    checklist: list[Any] = Field(default_factory=list)
    schedule: ScheduleIn

    model_config = {"extra": "forbid"}


class TemplatePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: str | None = None
    automatic: bool | None = None
    priority: str | None = None
    site_id: str | None = None
    department_id: str | None = None
    asset_id: str | None = None
    checklist: list[Any] | None = None
    schedule: SchedulePatch | None = None

    model_config = {"extra": "forbid"}


class ScheduleOut(BaseModel):
    type: str
    timezone: str | None = None
    time_of_day: str | None = None
    days_of_week: list[int] | None = None
    day_of_month: int | None = None
    date: datetime | None = None


class TemplateResponse(BaseModel):
    id: str
    org_id: str
    name: str
    description: str | None = None
    status: str
    automatic: bool
    priority: str
    site_id: str | None = None
    department_id: str | None = None
    asset_id: str | None = None
    checklist: list[Any]
    schedule: ScheduleOut
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GenerateNowResponse(BaseModel):
    outcome: str
    ticket_id: str | None = None
    scheduled_for: datetime | None = None


def _template_response(template) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        org_id=template.org_id,
        name=template.name,
        description=template.description,
        status=template.status,
        automatic=bool(template.automatic),
        priority=template.priority,
        site_id=template.site_id,
        department_id=template.department_id,
        asset_id=template.asset_id,
        checklist=list(template.checklist_json or []),
        schedule=ScheduleOut(
            type=template.schedule_type,
            timezone=template.schedule_timezone,
            time_of_day=template.schedule_time_of_day,
            days_of_week=template.schedule_days_of_week,
            day_of_month=template.schedule_day_of_month,
            date=template.schedule_date,
        ),
        next_run_at=template.next_run_at,
        last_run_at=template.last_run_at,
        created_at=template.created_at,
        updated_at=template.updated_at,
    )


def _draft_from_request(payload: TemplateCreateRequest) -> TemplateDraft:
    schedule = payload.schedule
    return TemplateDraft(
        name=payload.name,
        description=payload.description,
        status=payload.status,
        automatic=payload.automatic,
        priority=payload.priority,
        site_id=payload.site_id,
        department_id=payload.department_id,
        asset_id=payload.asset_id,
        checklist=list(payload.checklist),
        schedule=ScheduleSpec(
            type=schedule.type,
            timezone=schedule.timezone,
            time_of_day=schedule.time_of_day,
            days_of_week=tuple(schedule.days_of_week) if schedule.days_of_week is not None else None,
            day_of_month=schedule.day_of_month,
            date=schedule.date,
        ),
    )


@router.get("", response_model=SuccessEnvelope[list[TemplateResponse]])
async def list_templates_endpoint(
    org_id: str,
    request: Request,
    _principal: Principal = Depends(require_org_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    templates = await list_templates(db, org_id=org_id)
    return success_response(
        request=request,
        data=[_template_response(template).model_dump(mode="json") for template in templates],
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[TemplateResponse])
async def create_template_endpoint(
    org_id: str,
    request: Request,
    payload: TemplateCreateRequest,
    principal: Principal = Depends(require_org_role("maintenance")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    template = await create_template(
        db,
        org_id=org_id,
        draft=_draft_from_request(payload),
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_template_response(template))


@router.get("/{template_id}", response_model=SuccessEnvelope[TemplateResponse])
async def get_template_endpoint(
    org_id: str,
    template_id: str,
    request: Request,
    _principal: Principal = Depends(require_org_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    template = await get_template(db, org_id=org_id, template_id=template_id)
    return success_response(request=request, data=_template_response(template))


@router.patch("/{template_id}", response_model=SuccessEnvelope[TemplateResponse])
async def patch_template_endpoint(
    org_id: str,
    template_id: str,
    request: Request,
    payload: TemplatePatchRequest,
    principal: Principal = Depends(require_org_role("maintenance")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields the caller sent are applied; nested schedule fields merge the same way.
    changes = payload.model_dump(exclude_unset=True)
    template = await update_template(
        db,
        org_id=org_id,
        template_id=template_id,
        changes=changes,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_template_response(template))


@router.post("/{template_id}/duplicate", status_code=201, response_model=SuccessEnvelope[TemplateResponse])
async def duplicate_template_endpoint(
    org_id: str,
    template_id: str,
    request: Request,
    principal: Principal = Depends(require_org_role("maintenance")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    template = await duplicate_template(
        db,
        org_id=org_id,
        template_id=template_id,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_template_response(template))


@router.post("/{template_id}/generate-now", response_model=SuccessEnvelope[GenerateNowResponse])
async def generate_now_endpoint(
    org_id: str,
    template_id: str,
    request: Request,
    principal: Principal = Depends(require_org_role("maintenance")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await generate_now(db, org_id=org_id, template_id=template_id, actor_id=principal.user_id)
    return success_response(
        request=request,
        data=GenerateNowResponse(
            outcome=result.outcome,
            ticket_id=result.ticket_id,
            scheduled_for=result.scheduled_for,
        ),
    )


@router.get("/{template_id}/tickets", response_model=SuccessEnvelope[list[TicketResponse]])
async def list_template_tickets_endpoint(
    org_id: str,
    template_id: str,
    request: Request,
    _principal: Principal = Depends(require_org_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tickets = await list_template_tickets(db, org_id=org_id, template_id=template_id)
    return success_response(
        request=request,
        data=[ticket_response(ticket).model_dump(mode="json") for ticket in tickets],
    )
