from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.config import get_settings
from maintdesk.core.errors import EntitlementNotFound, ValidationError
from maintdesk.domain.models import Organization, OrganizationEntitlement
from maintdesk.persistence.repos import organizations as org_repo
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import PROVIDER_MANUAL, STATUS_TRIALING


logger = logging.getLogger(__name__)

ORG_STATUSES = ("active", "suspended", "deleted")
ORG_TYPE_STANDARD = "standard"
ORG_TYPE_DEMO = "demo"

_MAX_SUGGESTIONS = 5
_INVALID_ID_CHARS = re.compile(r"[^a-z0-9_-]")
_DASH_RUNS = re.compile(r"-{2,}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_organization_id(name: str) -> str:
    # Ids are derived once from the chosen name and never rewritten afterwards.
    candidate = re.sub(r"\s+", "-", (name or "").strip().lower())
    candidate = _INVALID_ID_CHARS.sub("", candidate)
    candidate = _DASH_RUNS.sub("-", candidate).strip("-")
    if not candidate:
        raise ValidationError("Organization name must contain letters or digits", field="name")
    return candidate


@dataclass(frozen=True)
class Availability:
    org_id: str
    available: bool
    name_taken: bool
    suggestions: list[str] = field(default_factory=list)


async def check_availability(session: AsyncSession, name: str) -> Availability:
    org_id = sanitize_organization_id(name)
    candidates = [org_id] + [f"{org_id}-{n}" for n in range(2, _MAX_SUGGESTIONS + 1)]
    taken = await org_repo.existing_ids(session, candidates)
    name_taken = await org_repo.name_taken(session, name)
    return Availability(
        org_id=org_id,
        available=org_id not in taken and not name_taken,
        name_taken=name_taken,
        suggestions=[candidate for candidate in candidates if candidate not in taken],
    )


async def create_organization(
    session: AsyncSession,
    *,
    name: str,
    created_by: str | None,
    demo: bool = False,
    now: datetime | None = None,
) -> Organization:
    """Create a tenant with its seeded trial entitlement.

    The creator counts as the first user. Demo tenants also get an expiry
    that the demo sweep enforces.
    """
    now = now or _utc_now()
    settings = get_settings()
    org_id = sanitize_organization_id(name)
    availability = await check_availability(session, name)
    if not availability.available:
        raise ValidationError(
            f"Organization {org_id} already exists",
            field="name",
        )

    organization = Organization(
        id=org_id,
        name=name.strip(),
        name_lower=name.strip().lower(),
        status="active",
        type=ORG_TYPE_DEMO if demo else ORG_TYPE_STANDARD,
        demo_expires_at=now + timedelta(days=settings.demo_period_days) if demo else None,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    entitlement = OrganizationEntitlement(
        org_id=org_id,
        plan_id=settings.default_plan_id,
        status=STATUS_TRIALING,
        provider=PROVIDER_MANUAL,
        trial_ends_at=now + timedelta(days=settings.trial_period_days),
        users_count=1 if created_by else 0,
        updated_at=now,
    )
    session.add(organization)
    await session.flush()
    session.add(entitlement)
    await record_event(
        session=session,
        org_id=org_id,
        actor_type="user",
        actor_id=created_by,
        event_type="organization.created",
        outcome="success",
        resource_type="organization",
        resource_id=org_id,
        metadata={"type": organization.type, "plan_id": entitlement.plan_id},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ValidationError(f"Organization {org_id} already exists", field="name") from exc
    logger.info("organization_created org_id=%s type=%s", org_id, organization.type)
    return organization


async def set_organization_status(
    session: AsyncSession,
    org_id: str,
    *,
    status: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> Organization:
    # Root-only lifecycle switch; non-active tenants are skipped by recurring generation.
    if status not in ("active", "suspended"):
        raise ValidationError(f"Unsupported organization status: {status}", field="status")
    organization = await org_repo.get_organization(session, org_id, for_update=True)
    if organization is None:
        raise EntitlementNotFound(org_id)
    previous = organization.status
    organization.status = status
    organization.updated_at = _utc_now()
    await record_event(
        session=session,
        org_id=org_id,
        actor_type="root",
        actor_id=actor_id,
        actor_role="root",
        event_type="organization.status_changed",
        outcome="success",
        resource_type="organization",
        resource_id=org_id,
        request_id=request_id,
        metadata={"from": previous, "to": status},
    )
    await session.commit()
    logger.info("organization_status_changed org_id=%s from=%s to=%s", org_id, previous, status)
    return organization
