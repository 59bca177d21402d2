from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import Principal, get_db, require_org_role
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, get_request_id, success_response
from maintdesk.services.resources import create_asset, create_department, create_invite, create_site


router = APIRouter(prefix="/organizations/{org_id}", tags=["resources"], responses=DEFAULT_ERROR_RESPONSES)


class SiteCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str | None = Field(default=None, max_length=500)

    model_config = {"extra": "forbid"}


class DepartmentCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)

    model_config = {"extra": "forbid"}


class AssetCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str | None = Field(default=None, max_length=100)
    site_id: str | None = None

    model_config = {"extra": "forbid"}


class InviteCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: str = "operator"

    model_config = {"extra": "forbid"}


class ResourceResponse(BaseModel):
    id: str
    org_id: str
    name: str
    created_at: datetime | None = None


class AssetResponse(ResourceResponse):
    code: str | None = None
    site_id: str | None = None


class InviteResponse(BaseModel):
    id: str
    org_id: str
    email: str
    role: str
    status: str
    created_at: datetime | None = None


@router.post("/sites", status_code=201, response_model=SuccessEnvelope[ResourceResponse])
async def create_site_endpoint(
    org_id: str,
    request: Request,
    payload: SiteCreateRequest,
    principal: Principal = Depends(require_org_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    site = await create_site(
        db,
        org_id=org_id,
        name=payload.name,
        address=payload.address,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=ResourceResponse(id=site.id, org_id=site.org_id, name=site.name, created_at=site.created_at),
    )


@router.post("/departments", status_code=201, response_model=SuccessEnvelope[ResourceResponse])
async def create_department_endpoint(
    org_id: str,
    request: Request,
    payload: DepartmentCreateRequest,
    principal: Principal = Depends(require_org_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    department = await create_department(
        db,
        org_id=org_id,
        name=payload.name,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=ResourceResponse(
            id=department.id, org_id=department.org_id, name=department.name, created_at=department.created_at
        ),
    )


@router.post("/assets", status_code=201, response_model=SuccessEnvelope[AssetResponse])
async def create_asset_endpoint(
    org_id: str,
    request: Request,
    payload: AssetCreateRequest,
    principal: Principal = Depends(require_org_role("maintenance")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    asset = await create_asset(
        db,
        org_id=org_id,
        name=payload.name,
        code=payload.code,
        site_id=payload.site_id,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=AssetResponse(
            id=asset.id,
            org_id=asset.org_id,
            name=asset.name,
            code=asset.code,
            site_id=asset.site_id,
            created_at=asset.created_at,
        ),
    )


@router.post("/invites", status_code=201, response_model=SuccessEnvelope[InviteResponse])
async def create_invite_endpoint(
    org_id: str,
    request: Request,
    payload: InviteCreateRequest,
    principal: Principal = Depends(require_org_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    invite = await create_invite(
        db,
        org_id=org_id,
        email=payload.email,
        role=payload.role,
        actor_id=principal.user_id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=InviteResponse(
            id=invite.id,
            org_id=invite.org_id,
            email=invite.email,
            role=invite.role,
            status=invite.status,
            created_at=invite.created_at,
        ),
    )
