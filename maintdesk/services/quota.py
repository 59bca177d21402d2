from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Any, Callable, Mapping

from maintdesk.core.errors import EntitlementInactive, FeatureNotEnabled, QuotaExceeded
from maintdesk.services.entitlements import EffectiveEntitlement, EntitlementState
from maintdesk.services.plan_catalog import (
    FEATURE_PREVENTIVES,
    LIMIT_MAX_ACTIVE_PREVENTIVES,
    LIMIT_MAX_ASSETS,
    LIMIT_MAX_DEPARTMENTS,
    LIMIT_MAX_SITES,
    LIMIT_MAX_USERS,
    PLAN_FREE,
)


logger = logging.getLogger(__name__)

KIND_SITES = "sites"
KIND_ASSETS = "assets"
KIND_DEPARTMENTS = "departments"
KIND_USERS = "users"
KIND_PREVENTIVES = "preventives"

# kind -> (limit key, usage column)
KIND_FIELDS: dict[str, tuple[str, str]] = {
    KIND_SITES: (LIMIT_MAX_SITES, "sites_count"),
    KIND_ASSETS: (LIMIT_MAX_ASSETS, "assets_count"),
    KIND_DEPARTMENTS: (LIMIT_MAX_DEPARTMENTS, "departments_count"),
    KIND_USERS: (LIMIT_MAX_USERS, "users_count"),
    KIND_PREVENTIVES: (LIMIT_MAX_ACTIVE_PREVENTIVES, "active_preventives_count"),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_unlimited(limit: Any) -> bool:
    if limit is None:
        return True
    return isinstance(limit, float) and not math.isfinite(limit)


def can_create(kind: str, usage: Mapping[str, Any] | None, limits: Mapping[str, Any] | None) -> bool:
    # Strict comparison: the limit is a ceiling that usage never reaches.
    if usage is None or limits is None:
        return False
    limit_key, usage_field = KIND_FIELDS[kind]
    limit = limits.get(limit_key)
    if _is_unlimited(limit):
        return True
    return int(usage.get(usage_field) or 0) < limit


def recurring_generation_granted(
    entitlement: EffectiveEntitlement, *, is_demo: bool, now: datetime | None = None
) -> bool:
    # Demo tenants may run recurring maintenance whatever their plan says.
    if not entitlement.is_live(now):
        return False
    if is_demo:
        return True
    return entitlement.grants(FEATURE_PREVENTIVES, now) and entitlement.plan_id != PLAN_FREE


@dataclass(frozen=True)
class CreateDecision:
    # Per-kind verdict rendered by the entitlement read model.
    kind: str
    allowed: bool
    reason: str | None = None
    code: str | None = None


class QuotaEnforcer:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or _utc_now

    def check(
        self,
        kind: str,
        entitlement: EffectiveEntitlement,
        *,
        is_demo: bool = False,
        now: datetime | None = None,
    ) -> None:
        # Raise the first failing gate; status, then count, then the recurring feature.
        now = now or self._time_provider()
        if kind == KIND_PREVENTIVES and not entitlement.is_live(now):
            raise EntitlementInactive(kind, status=entitlement.status, expired=entitlement.is_expired(now))

        limit_key, usage_field = KIND_FIELDS[kind]
        if not can_create(kind, entitlement.usage, entitlement.limits):
            raise QuotaExceeded(
                kind,
                limit=entitlement.limits.get(limit_key),
                used=int(entitlement.usage.get(usage_field) or 0),
            )

        if kind == KIND_PREVENTIVES and not recurring_generation_granted(entitlement, is_demo=is_demo, now=now):
            raise FeatureNotEnabled(FEATURE_PREVENTIVES, plan_id=entitlement.plan_id)

    def decide(
        self,
        kind: str,
        entitlement: EffectiveEntitlement,
        *,
        is_demo: bool = False,
        locale: str | None = None,
        now: datetime | None = None,
    ) -> CreateDecision:
        try:
            self.check(kind, entitlement, is_demo=is_demo, now=now)
        except (EntitlementInactive, QuotaExceeded, FeatureNotEnabled) as exc:
            return CreateDecision(kind=kind, allowed=False, reason=exc.message_for(locale), code=exc.code)
        return CreateDecision(kind=kind, allowed=True)

    def consume(
        self,
        state: EntitlementState,
        kind: str,
        *,
        now: datetime | None = None,
    ) -> EffectiveEntitlement:
        """Gate a creation and increment its usage counter by one.

        Must run inside the organization-locked transaction that performs the
        gated write. On denial nothing is mutated.
        """
        now = now or self._time_provider()
        feature = FEATURE_PREVENTIVES if kind == KIND_PREVENTIVES else None
        effective = state.resolve(feature=feature, now=now)
        self.check(kind, effective, is_demo=state.organization.type == "demo", now=now)

        _, usage_field = KIND_FIELDS[kind]
        row = state.entitlement
        setattr(row, usage_field, int(getattr(row, usage_field) or 0) + 1)
        row.updated_at = now
        logger.debug(
            "quota_consumed org_id=%s kind=%s used=%s",
            row.org_id,
            kind,
            getattr(row, usage_field),
        )
        return effective

    def release(self, state: EntitlementState, kind: str, *, now: datetime | None = None) -> None:
        # Give a slot back (floor 0) when a counted resource leaves the counted state.
        _, usage_field = KIND_FIELDS[kind]
        row = state.entitlement
        setattr(row, usage_field, max(0, int(getattr(row, usage_field) or 0) - 1))
        row.updated_at = now or self._time_provider()


_enforcer = QuotaEnforcer()


def get_quota_enforcer() -> QuotaEnforcer:
    return _enforcer


def creation_decisions(
    state: EntitlementState,
    *,
    locale: str | None = None,
    now: datetime | None = None,
) -> dict[str, CreateDecision]:
    # Per-kind allow/deny with the localized reason the UI shows next to disabled create buttons.
    now = now or _utc_now()
    enforcer = get_quota_enforcer()
    is_demo = state.organization.type == "demo"
    decisions: dict[str, CreateDecision] = {}
    for kind in KIND_FIELDS:
        feature = FEATURE_PREVENTIVES if kind == KIND_PREVENTIVES else None
        effective = state.resolve(feature=feature, now=now)
        decisions[kind] = enforcer.decide(kind, effective, is_demo=is_demo, locale=locale, now=now)
    return decisions
