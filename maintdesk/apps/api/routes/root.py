from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import Principal, get_db, require_root
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, get_request_id, success_response
from maintdesk.core.errors import TransientStoreError, ValidationError
from maintdesk.services.audit import record_event
from maintdesk.services.billing import apply_entitlement_override
from maintdesk.services.organizations import set_organization_status
from maintdesk.services.plan_catalog import PLAN_IDS, get_plan_catalog, upsert_plan
from maintdesk.services.scheduling.worker import JOBS, enqueue_job, run_job_once


router = APIRouter(prefix="/root", tags=["root"], responses=DEFAULT_ERROR_RESPONSES)


class EntitlementOverrideRequest(BaseModel):
    plan_id: str | None = None
    status: str | None = None
    limits: dict[str, int | None] | None = None
    features: dict[str, bool] | None = None
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None

    model_config = {"extra": "forbid"}


class EntitlementOverrideResponse(BaseModel):
    org_id: str
    plan_id: str
    status: str
    provider: str
    limits: dict[str, Any]
    features: dict[str, bool]
    usage: dict[str, Any]
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None


class OrganizationStatusRequest(BaseModel):
    status: str

    model_config = {"extra": "forbid"}


class OrganizationStatusResponse(BaseModel):
    id: str
    status: str


@router.patch(
    "/organizations/{org_id}/entitlement",
    response_model=SuccessEnvelope[EntitlementOverrideResponse],
)
async def override_entitlement(
    org_id: str,
    request: Request,
    payload: EntitlementOverrideRequest,
    principal: Principal = Depends(require_root),
    db: AsyncSession = Depends(get_db),
) -> dict:
    effective = await apply_entitlement_override(
        db,
        org_id,
        plan_id=payload.plan_id,
        status=payload.status,
        limits=payload.limits,
        features=payload.features,
        trial_ends_at=payload.trial_ends_at,
        current_period_end=payload.current_period_end,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=EntitlementOverrideResponse(
            org_id=effective.org_id,
            plan_id=effective.plan_id,
            status=effective.status,
            provider=effective.provider,
            limits=effective.limits,
            features=effective.features,
            usage=effective.usage,
            trial_ends_at=effective.trial_ends_at,
            current_period_end=effective.current_period_end,
        ),
    )


@router.patch("/organizations/{org_id}/status", response_model=SuccessEnvelope[OrganizationStatusResponse])
async def change_organization_status(
    org_id: str,
    request: Request,
    payload: OrganizationStatusRequest,
    principal: Principal = Depends(require_root),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await set_organization_status(
        db,
        org_id,
        status=payload.status,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=OrganizationStatusResponse(id=organization.id, status=organization.status),
    )


class PlanUpdateRequest(BaseModel):
    name: str | None = None
    limits: dict[str, int | None] | None = None
    features: dict[str, bool] | None = None

    model_config = {"extra": "forbid"}


class PlanResponse(BaseModel):
    plan_id: str
    limits: dict[str, int | None]
    features: dict[str, bool]


@router.put("/plans/{plan_id}", response_model=SuccessEnvelope[PlanResponse])
async def update_plan(
    plan_id: str,
    request: Request,
    payload: PlanUpdateRequest,
    principal: Principal = Depends(require_root),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Catalog rows override built-in defaults for every tenant on the plan.
    if plan_id not in PLAN_IDS:
        raise ValidationError(f"Unknown plan: {plan_id}", field="plan_id")
    await upsert_plan(db, plan_id=plan_id, name=payload.name, limits=payload.limits, features=payload.features)
    await record_event(
        session=db,
        org_id=None,
        actor_type="root",
        actor_id=principal.user_id,
        actor_role="root",
        event_type="plan_catalog.updated",
        outcome="success",
        resource_type="plan",
        resource_id=plan_id,
        request_id=get_request_id(request),
        metadata={"limits": payload.limits, "features": payload.features},
        commit=True,
    )
    plan = (await get_plan_catalog(db)).get(plan_id)
    return success_response(
        request=request,
        data=PlanResponse(plan_id=plan.plan_id, limits=plan.limits, features=plan.features),
    )


@router.post("/jobs/{job}")
async def run_job(
    job: str,
    request: Request,
    enqueue: bool = Query(default=False),
    _principal: Principal = Depends(require_root),
) -> dict:
    if job not in JOBS:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"Unknown job: {job}", "jobs": list(JOBS)},
        )
    if enqueue:
        try:
            return success_response(request=request, data=await enqueue_job(job))
        except (RedisError, OSError) as exc:
            raise TransientStoreError("Job queue unavailable") from exc
    return success_response(request=request, data=await run_job_once(job))
