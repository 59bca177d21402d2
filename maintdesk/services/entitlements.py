from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.errors import EntitlementNotFound
from maintdesk.domain.models import BillingProviderRecord, Organization, OrganizationEntitlement
from maintdesk.persistence.repos import organizations as org_repo
from maintdesk.services.plan_catalog import PlanCatalog, get_plan_catalog


logger = logging.getLogger(__name__)

STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
ENTITLEMENT_STATUSES = (STATUS_TRIALING, STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELED)
LIVE_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

PROVIDER_STRIPE = "stripe"
PROVIDER_GOOGLE_PLAY = "google_play"
PROVIDER_APPLE_APP_STORE = "apple_app_store"
PROVIDER_MANUAL = "manual"
PROVIDERS = (PROVIDER_STRIPE, PROVIDER_GOOGLE_PLAY, PROVIDER_APPLE_APP_STORE, PROVIDER_MANUAL)

SOURCE_PRIMARY = "primary"

USAGE_FIELDS = (
    "sites_count",
    "assets_count",
    "departments_count",
    "users_count",
    "active_preventives_count",
    "attachments_this_month_mb",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EffectiveEntitlement:
    # Catalog defaults merged with stored overrides; usage always comes from the primary record.
    org_id: str
    plan_id: str
    status: str
    provider: str
    limits: dict[str, int | None]
    features: dict[str, bool]
    usage: dict[str, Any] = field(default_factory=dict)
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    updated_at: datetime | None = None
    source: str = SOURCE_PRIMARY

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.trial_ends_at is None:
            return False
        return self.trial_ends_at <= (now or _utc_now())

    def is_live(self, now: datetime | None = None) -> bool:
        # A lapsed trial never grants anything, whatever the nominal status says.
        return self.status in LIVE_STATUSES and not self.is_expired(now)

    def grants(self, feature: str, now: datetime | None = None) -> bool:
        return self.is_live(now) and self.features.get(feature) is True


def usage_of(entitlement: OrganizationEntitlement) -> dict[str, Any]:
    return {name: getattr(entitlement, name) or 0 for name in USAGE_FIELDS}


def merge_entitlement(entitlement: OrganizationEntitlement, catalog: PlanCatalog) -> EffectiveEntitlement:
    # Effective limits/features are always catalog defaults shallow-overridden by stored values.
    plan = catalog.get(entitlement.plan_id)
    return EffectiveEntitlement(
        org_id=entitlement.org_id,
        plan_id=entitlement.plan_id,
        status=entitlement.status,
        provider=entitlement.provider,
        limits={**plan.limits, **(entitlement.limits_json or {})},
        features={**plan.features, **(entitlement.features_json or {})},
        usage=usage_of(entitlement),
        trial_ends_at=entitlement.trial_ends_at,
        current_period_end=entitlement.current_period_end,
        updated_at=entitlement.updated_at,
    )


def _from_provider_record(
    record: BillingProviderRecord, primary: EffectiveEntitlement, catalog: PlanCatalog
) -> EffectiveEntitlement:
    plan = catalog.get(record.plan_id)
    return EffectiveEntitlement(
        org_id=primary.org_id,
        plan_id=record.plan_id,
        status=record.status,
        provider=record.provider,
        limits=dict(plan.limits),
        features=dict(plan.features),
        usage=primary.usage,
        trial_ends_at=record.trial_ends_at,
        current_period_end=record.current_period_end,
        updated_at=record.updated_at,
        source=f"billing_provider:{record.provider}",
    )


def resolve(
    entitlement: OrganizationEntitlement,
    provider_records: Iterable[BillingProviderRecord],
    catalog: PlanCatalog,
    *,
    feature: str | None = None,
    now: datetime | None = None,
) -> EffectiveEntitlement:
    """Resolve the entitlement in force for one request.

    When ``feature`` is requested and the primary entitlement does not grant
    it, non-conflicting live provider records are tried newest first. A
    fallback applies to this request only and is never persisted.
    """
    now = now or _utc_now()
    primary = merge_entitlement(entitlement, catalog)
    if feature is None or primary.grants(feature, now):
        return primary

    candidates = sorted(
        (
            record
            for record in provider_records
            if not record.conflict and record.status in LIVE_STATUSES
        ),
        key=lambda record: record.updated_at,
        reverse=True,
    )
    for record in candidates:
        candidate = _from_provider_record(record, primary, catalog)
        if candidate.grants(feature, now):
            logger.info(
                "entitlement_fallback_applied org_id=%s feature=%s provider=%s",
                primary.org_id,
                feature,
                record.provider,
            )
            return candidate
    return primary


@dataclass
class EntitlementState:
    # Rows read under one transaction; callers mutate these directly.
    organization: Organization
    entitlement: OrganizationEntitlement
    provider_records: list[BillingProviderRecord]
    catalog: PlanCatalog

    def resolve(self, *, feature: str | None = None, now: datetime | None = None) -> EffectiveEntitlement:
        return resolve(self.entitlement, self.provider_records, self.catalog, feature=feature, now=now)


async def load_entitlement_state(
    session: AsyncSession, org_id: str, *, for_update: bool = False
) -> EntitlementState:
    # Lock the organization first so every entitlement writer queues on the same row.
    catalog = await get_plan_catalog(session)
    organization = await org_repo.get_organization(session, org_id, for_update=for_update)
    if organization is None:
        raise EntitlementNotFound(org_id)
    entitlement = await org_repo.get_entitlement(session, org_id, for_update=for_update)
    if entitlement is None:
        raise EntitlementNotFound(org_id)
    provider_records = await org_repo.list_provider_records(session, org_id)
    return EntitlementState(
        organization=organization,
        entitlement=entitlement,
        provider_records=provider_records,
        catalog=catalog,
    )
