from __future__ import annotations

from dataclasses import dataclass, field
import asyncio
import logging
import math
import time
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.config import get_settings
from maintdesk.domain.models import PlanCatalogEntry


logger = logging.getLogger(__name__)

PLAN_FREE = "free"
PLAN_BASIC = "basic"
PLAN_STARTER = "starter"
PLAN_PRO = "pro"
PLAN_ENTERPRISE = "enterprise"
PLAN_IDS = (PLAN_FREE, PLAN_BASIC, PLAN_STARTER, PLAN_PRO, PLAN_ENTERPRISE)

FEATURE_EXPORT_PDF = "EXPORT_PDF"
FEATURE_AUDIT_TRAIL = "AUDIT_TRAIL"
FEATURE_PREVENTIVES = "PREVENTIVES"
FEATURE_KEYS = (FEATURE_EXPORT_PDF, FEATURE_AUDIT_TRAIL, FEATURE_PREVENTIVES)

LIMIT_MAX_SITES = "max_sites"
LIMIT_MAX_ASSETS = "max_assets"
LIMIT_MAX_DEPARTMENTS = "max_departments"
LIMIT_MAX_USERS = "max_users"
LIMIT_MAX_ACTIVE_PREVENTIVES = "max_active_preventives"
LIMIT_ATTACHMENTS_MONTHLY_MB = "attachments_monthly_mb"
LIMIT_KEYS = (
    LIMIT_MAX_SITES,
    LIMIT_MAX_ASSETS,
    LIMIT_MAX_DEPARTMENTS,
    LIMIT_MAX_USERS,
    LIMIT_MAX_ACTIVE_PREVENTIVES,
    LIMIT_ATTACHMENTS_MONTHLY_MB,
)

# None means unlimited.
_BUILTIN_LIMITS: dict[str, dict[str, int | None]] = {
    PLAN_FREE: {
        LIMIT_MAX_SITES: 1,
        LIMIT_MAX_ASSETS: 1,
        LIMIT_MAX_DEPARTMENTS: 3,
        LIMIT_MAX_USERS: 2,
        LIMIT_MAX_ACTIVE_PREVENTIVES: 3,
        LIMIT_ATTACHMENTS_MONTHLY_MB: 0,
    },
    PLAN_BASIC: {
        LIMIT_MAX_SITES: 2,
        LIMIT_MAX_ASSETS: 5,
        LIMIT_MAX_DEPARTMENTS: 5,
        LIMIT_MAX_USERS: 5,
        LIMIT_MAX_ACTIVE_PREVENTIVES: 0,
        LIMIT_ATTACHMENTS_MONTHLY_MB: 0,
    },
    PLAN_STARTER: {
        LIMIT_MAX_SITES: 5,
        LIMIT_MAX_ASSETS: 200,
        LIMIT_MAX_DEPARTMENTS: 15,
        LIMIT_MAX_USERS: 10,
        LIMIT_MAX_ACTIVE_PREVENTIVES: 25,
        LIMIT_ATTACHMENTS_MONTHLY_MB: 500,
    },
    PLAN_PRO: {
        LIMIT_MAX_SITES: 15,
        LIMIT_MAX_ASSETS: 1000,
        LIMIT_MAX_DEPARTMENTS: 50,
        LIMIT_MAX_USERS: 25,
        LIMIT_MAX_ACTIVE_PREVENTIVES: 100,
        LIMIT_ATTACHMENTS_MONTHLY_MB: 5000,
    },
    PLAN_ENTERPRISE: {key: None for key in LIMIT_KEYS},
}

_BUILTIN_FEATURES: dict[str, dict[str, bool]] = {
    PLAN_FREE: {FEATURE_EXPORT_PDF: False, FEATURE_AUDIT_TRAIL: False, FEATURE_PREVENTIVES: False},
    PLAN_BASIC: {FEATURE_EXPORT_PDF: False, FEATURE_AUDIT_TRAIL: False, FEATURE_PREVENTIVES: False},
    PLAN_STARTER: {FEATURE_EXPORT_PDF: True, FEATURE_AUDIT_TRAIL: False, FEATURE_PREVENTIVES: True},
    PLAN_PRO: {FEATURE_EXPORT_PDF: True, FEATURE_AUDIT_TRAIL: True, FEATURE_PREVENTIVES: True},
    PLAN_ENTERPRISE: {FEATURE_EXPORT_PDF: True, FEATURE_AUDIT_TRAIL: True, FEATURE_PREVENTIVES: True},
}


@dataclass(frozen=True)
class PlanDefinition:
    # Catalog defaults for one plan; callers layer per-organization overrides on top.
    plan_id: str
    limits: dict[str, int | None] = field(default_factory=dict)
    features: dict[str, bool] = field(default_factory=dict)

    def grants(self, feature: str) -> bool:
        return self.features.get(feature) is True


class PlanCatalog:
    """Read-only plan lookup injected into the resolver and quota enforcer.

    Built-in defaults are shallow-overridden by stored catalog rows. Plan ids
    missing from both resolve to the lowest tier.
    """

    def __init__(self, overrides: Iterable[PlanDefinition] | None = None) -> None:
        plans: dict[str, PlanDefinition] = {
            plan_id: PlanDefinition(
                plan_id=plan_id,
                limits=dict(_BUILTIN_LIMITS[plan_id]),
                features=dict(_BUILTIN_FEATURES[plan_id]),
            )
            for plan_id in PLAN_IDS
        }
        for override in overrides or ():
            base = plans.get(override.plan_id) or plans[PLAN_FREE]
            plans[override.plan_id] = PlanDefinition(
                plan_id=override.plan_id,
                limits={**base.limits, **override.limits},
                features={**base.features, **override.features},
            )
        self._plans = plans

    def get(self, plan_id: str | None) -> PlanDefinition:
        plan = self._plans.get(plan_id or "")
        if plan is not None:
            return plan
        logger.warning("plan_catalog_unknown_plan plan_id=%s", plan_id)
        return self._plans.get(get_settings().default_plan_id) or self._plans[PLAN_FREE]

    def has(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def plan_ids(self) -> list[str]:
        return sorted(self._plans)


_catalog_cache: tuple[float, PlanCatalog] | None = None
_catalog_cache_lock = asyncio.Lock()


async def get_plan_catalog(session: AsyncSession) -> PlanCatalog:
    # Short-lived process cache; catalog edits are rare and tolerate a TTL of staleness.
    global _catalog_cache
    now = time.monotonic()
    cached = _catalog_cache
    if cached and cached[0] > now:
        return cached[1]

    catalog = PlanCatalog(await _load_stored_plans(session))
    ttl = max(0, int(get_settings().plan_catalog_cache_ttl_s))
    async with _catalog_cache_lock:
        _catalog_cache = (now + ttl, catalog)
    return catalog


def reset_plan_catalog_cache() -> None:
    global _catalog_cache
    _catalog_cache = None


async def _load_stored_plans(session: AsyncSession) -> list[PlanDefinition]:
    result = await session.execute(select(PlanCatalogEntry).order_by(PlanCatalogEntry.plan_id))
    return [
        PlanDefinition(
            plan_id=row.plan_id,
            limits=_coerce_limits(row.limits_json),
            features=_coerce_features(row.features_json),
        )
        for row in result.scalars().all()
    ]


def _coerce_limits(raw: dict[str, Any] | None) -> dict[str, int | None]:
    # Ignore unknown keys and non-numeric values so a bad row cannot poison every lookup.
    limits: dict[str, int | None] = {}
    for key, value in (raw or {}).items():
        if key not in LIMIT_KEYS:
            continue
        if value is None:
            limits[key] = None
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            limits[key] = int(value) if math.isfinite(value) else None
    return limits


def _coerce_features(raw: dict[str, Any] | None) -> dict[str, bool]:
    return {key: bool(value) for key, value in (raw or {}).items() if key in FEATURE_KEYS}


async def upsert_plan(
    session: AsyncSession,
    *,
    plan_id: str,
    name: str | None = None,
    limits: dict[str, Any] | None = None,
    features: dict[str, Any] | None = None,
) -> PlanCatalogEntry:
    # Store catalog overrides and drop the cached catalog so the next read sees them.
    row = await session.get(PlanCatalogEntry, plan_id)
    if row is None:
        row = PlanCatalogEntry(plan_id=plan_id)
        session.add(row)
    row.name = name or row.name or plan_id
    row.limits_json = _coerce_limits(limits) if limits is not None else row.limits_json
    row.features_json = _coerce_features(features) if features is not None else row.features_json
    await session.commit()
    reset_plan_catalog_cache()
    return row
