from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.errors import (
    EntitlementInactive,
    FeatureNotEnabled,
    QuotaExceeded,
    ReferenceNotFound,
    TransientStoreError,
    ValidationError,
)
from maintdesk.domain.models import Asset, Base, Department, Site, UserInvite
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import EntitlementState, load_entitlement_state
from maintdesk.services.quota import (
    KIND_ASSETS,
    KIND_DEPARTMENTS,
    KIND_SITES,
    KIND_USERS,
    get_quota_enforcer,
)


logger = logging.getLogger(__name__)

ROLES = ("operator", "maintenance", "admin", "super_admin")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_REFERENCE_MODELS: dict[str, type[Base]] = {
    "site": Site,
    "department": Department,
    "asset": Asset,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _require_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required", field="name")
    return cleaned


async def ensure_reference(session: AsyncSession, org_id: str, kind: str, ref_id: str | None) -> None:
    # Referenced rows must exist inside the same tenant.
    if not ref_id:
        return
    model = _REFERENCE_MODELS[kind]
    result = await session.execute(
        select(model.id).where(model.id == ref_id, model.org_id == org_id)  # type: ignore[attr-defined]
    )
    if result.scalar_one_or_none() is None:
        raise ReferenceNotFound(kind, ref_id)


async def create_counted(
    session: AsyncSession,
    *,
    org_id: str,
    kind: str,
    build: Callable[[EntitlementState, datetime], Any],
    prepare: Callable[[AsyncSession], Any] | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> Any:
    """Gate and perform one counted creation in a single organization-locked transaction.

    ``prepare`` runs reference checks inside the transaction before the quota
    is consumed. On any denial nothing is written.
    """
    now = now or _utc_now()
    try:
        async with session.begin():
            state = await load_entitlement_state(session, org_id, for_update=True)
            if prepare is not None:
                await prepare(session)
            get_quota_enforcer().consume(state, kind, now=now)
            row = build(state, now)
            session.add(row)
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="user",
                actor_id=actor_id,
                event_type=f"{kind}.created",
                outcome="success",
                resource_type=kind,
                resource_id=row.id,
                request_id=request_id,
            )
    except (QuotaExceeded, EntitlementInactive, FeatureNotEnabled) as exc:
        logger.info("creation_denied org_id=%s kind=%s code=%s", org_id, kind, exc.code)
        await record_event(
            org_id=org_id,
            actor_type="user",
            actor_id=actor_id,
            event_type=f"{kind}.create_denied",
            outcome="failure",
            resource_type=kind,
            request_id=request_id,
            metadata=exc.details,
            error_code=exc.code,
        )
        raise
    except IntegrityError as exc:
        raise ValidationError(f"Duplicate {kind} entry") from exc
    except DBAPIError as exc:
        raise TransientStoreError(f"Could not create {kind}") from exc
    return row


async def create_site(
    session: AsyncSession,
    *,
    org_id: str,
    name: str,
    address: str | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> Site:
    cleaned = _require_name(name)
    return await create_counted(
        session,
        org_id=org_id,
        kind=KIND_SITES,
        build=lambda state, now: Site(
            id=new_id("site"), org_id=org_id, name=cleaned, address=address, created_by=actor_id, created_at=now
        ),
        actor_id=actor_id,
        request_id=request_id,
    )


async def create_department(
    session: AsyncSession,
    *,
    org_id: str,
    name: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> Department:
    cleaned = _require_name(name)
    return await create_counted(
        session,
        org_id=org_id,
        kind=KIND_DEPARTMENTS,
        build=lambda state, now: Department(
            id=new_id("dept"), org_id=org_id, name=cleaned, created_by=actor_id, created_at=now
        ),
        actor_id=actor_id,
        request_id=request_id,
    )


async def create_asset(
    session: AsyncSession,
    *,
    org_id: str,
    name: str,
    code: str | None = None,
    site_id: str | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> Asset:
    cleaned = _require_name(name)

    async def prepare(tx_session: AsyncSession) -> None:
        await ensure_reference(tx_session, org_id, "site", site_id)

    return await create_counted(
        session,
        org_id=org_id,
        kind=KIND_ASSETS,
        prepare=prepare,
        build=lambda state, now: Asset(
            id=new_id("asset"),
            org_id=org_id,
            name=cleaned,
            code=code,
            site_id=site_id,
            created_by=actor_id,
            created_at=now,
        ),
        actor_id=actor_id,
        request_id=request_id,
    )


async def create_invite(
    session: AsyncSession,
    *,
    org_id: str,
    email: str,
    role: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> UserInvite:
    # Invites reserve a user seat at send time.
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("A valid email is required", field="email")
    if role not in ROLES or role == "super_admin":
        raise ValidationError(f"Role {role} cannot be invited", field="role")
    return await create_counted(
        session,
        org_id=org_id,
        kind=KIND_USERS,
        build=lambda state, now: UserInvite(
            id=new_id("inv"),
            org_id=org_id,
            email=normalized,
            role=role,
            status="pending",
            invited_by=actor_id,
            created_at=now,
        ),
        actor_id=actor_id,
        request_id=request_id,
    )
