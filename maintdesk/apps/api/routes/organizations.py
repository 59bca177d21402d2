from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import Principal, get_current_principal, get_db, require_org_role
from maintdesk.apps.api.errors import request_locale
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, success_response
from maintdesk.services.entitlements import load_entitlement_state
from maintdesk.services.organizations import check_availability, create_organization
from maintdesk.services.quota import creation_decisions


router = APIRouter(prefix="/organizations", tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class AvailabilityResponse(BaseModel):
    org_id: str
    available: bool
    name_taken: bool
    suggestions: list[str]


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    demo: bool = False

    model_config = {"extra": "forbid"}


class OrganizationResponse(BaseModel):
    id: str
    name: str
    status: str
    type: str
    demo_expires_at: datetime | None = None
    created_at: datetime | None = None


class CreateDecisionResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    code: str | None = None


class EntitlementResponse(BaseModel):
    org_id: str
    plan_id: str
    status: str
    provider: str
    source: str
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    limits: dict[str, Any]
    features: dict[str, bool]
    usage: dict[str, Any]
    can_create: dict[str, CreateDecisionResponse]
    preventives_paused: bool
    preventives_paused_reason: str | None = None


def _organization_response(organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=organization.id,
        name=organization.name,
        status=organization.status,
        type=organization.type,
        demo_expires_at=organization.demo_expires_at,
        created_at=organization.created_at,
    )


@router.get("/availability", response_model=SuccessEnvelope[AvailabilityResponse])
async def organization_availability(
    request: Request,
    name: str = Query(min_length=1, max_length=200),
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    availability = await check_availability(db, name)
    return success_response(
        request=request,
        data=AvailabilityResponse(
            org_id=availability.org_id,
            available=availability.available,
            name_taken=availability.name_taken,
            suggestions=availability.suggestions,
        ),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[OrganizationResponse])
async def create_organization_endpoint(
    request: Request,
    payload: OrganizationCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Demo tenants are provisioned by root operators only.
    if payload.demo and not principal.is_root:
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": "Only root can create demo organizations"},
        )
    organization = await create_organization(
        db,
        name=payload.name,
        created_by=None if principal.is_root else principal.user_id,
        demo=payload.demo,
    )
    return success_response(request=request, data=_organization_response(organization))


@router.get("/{org_id}/entitlement", response_model=SuccessEnvelope[EntitlementResponse])
async def get_entitlement(
    org_id: str,
    request: Request,
    _principal: Principal = Depends(require_org_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    state = await load_entitlement_state(db, org_id)
    effective = state.resolve()
    decisions = creation_decisions(state, locale=request_locale(request))
    return success_response(
        request=request,
        data=EntitlementResponse(
            org_id=org_id,
            plan_id=effective.plan_id,
            status=effective.status,
            provider=effective.provider,
            source=effective.source,
            trial_ends_at=effective.trial_ends_at,
            current_period_end=effective.current_period_end,
            limits=effective.limits,
            features=effective.features,
            usage=effective.usage,
            can_create={
                kind: CreateDecisionResponse(allowed=d.allowed, reason=d.reason, code=d.code)
                for kind, d in decisions.items()
            },
            preventives_paused=bool(state.organization.preventives_paused),
            preventives_paused_reason=state.organization.preventives_paused_reason,
        ),
    )
