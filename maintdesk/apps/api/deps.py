from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.persistence.db import get_session
from maintdesk.services.audit import record_event


logger = logging.getLogger(__name__)

ROLE_ORDER = {"operator": 1, "maintenance": 2, "admin": 3, "super_admin": 4}
_TRUE_VALUES = {"1", "true", "yes"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success and error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the gateway; authentication itself happens upstream.
    user_id: str
    org_id: str | None = None
    role: str | None = None
    is_root: bool = False


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str | None, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role or "", 0) >= ROLE_ORDER.get(minimum_role, 0)


async def get_current_principal(request: Request) -> Principal:
    is_root = (request.headers.get("X-Root") or "").strip().lower() in _TRUE_VALUES
    user_id = request.headers.get("X-User-Id")
    if not user_id and not is_root:
        raise _auth_error("X-User-Id header is required")
    role_header = request.headers.get("X-Role")
    role = None
    if role_header:
        try:
            role = normalize_role(role_header)
        except ValueError as exc:
            raise _forbidden_error(str(exc)) from exc
    return Principal(
        user_id=user_id or "root",
        org_id=request.headers.get("X-Org-Id") or None,
        role=role,
        is_root=is_root,
    )


def require_org_role(minimum_role: str):
    # Dependency factory binding the {org_id} path parameter to the caller's tenant and role.
    async def _dependency(
        org_id: str,
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if principal.is_root:
            return principal
        if principal.org_id != org_id or not role_allows(role=principal.role, minimum_role=minimum_role):
            await record_event(
                session=db,
                org_id=org_id,
                actor_type="user",
                actor_id=principal.user_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=getattr(request.state, "request_id", None),
                metadata={"path": request.url.path, "method": request.method, "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
                commit=True,
            )
            if principal.org_id != org_id:
                raise _forbidden_error("Organization mismatch for this caller")
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


async def require_root(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_root:
        raise _forbidden_error("Root access required")
    return principal
