from __future__ import annotations

from datetime import datetime, timedelta, timezone

from maintdesk.domain.models import BillingProviderRecord, OrganizationEntitlement
from maintdesk.services.entitlements import merge_entitlement, resolve
from maintdesk.services.plan_catalog import FEATURE_PREVENTIVES, PlanCatalog, PlanDefinition


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entitlement(**overrides) -> OrganizationEntitlement:
    values = {
        "org_id": "org-1",
        "plan_id": "free",
        "status": "active",
        "provider": "manual",
        "sites_count": 1,
        "active_preventives_count": 2,
    }
    values.update(overrides)
    return OrganizationEntitlement(**values)


def _record(provider: str, plan_id: str, *, days_ago: int, status: str = "active", conflict: bool = False):
    return BillingProviderRecord(
        org_id="org-1",
        provider=provider,
        plan_id=plan_id,
        status=status,
        conflict=conflict,
        updated_at=NOW - timedelta(days=days_ago),
    )


def test_merge_overrides_catalog_defaults_shallowly() -> None:
    effective = merge_entitlement(
        _entitlement(plan_id="starter", limits_json={"max_sites": 9}, features_json={"AUDIT_TRAIL": True}),
        PlanCatalog(),
    )
    assert effective.limits["max_sites"] == 9
    assert effective.limits["max_assets"] == 200
    assert effective.features["AUDIT_TRAIL"] is True
    assert effective.features[FEATURE_PREVENTIVES] is True
    assert effective.usage["sites_count"] == 1
    assert effective.usage["assets_count"] == 0


def test_unknown_plan_resolves_to_lowest_tier() -> None:
    catalog = PlanCatalog()
    effective = merge_entitlement(_entitlement(plan_id="platinum"), catalog)
    assert effective.limits == catalog.get("free").limits
    assert effective.plan_id == "platinum"


def test_stored_catalog_rows_override_builtin_plans() -> None:
    catalog = PlanCatalog([PlanDefinition(plan_id="starter", limits={"max_sites": 7})])
    plan = catalog.get("starter")
    assert plan.limits["max_sites"] == 7
    assert plan.limits["max_active_preventives"] == 25
    assert plan.grants(FEATURE_PREVENTIVES)


def test_fallback_picks_newest_live_non_conflicting_provider() -> None:
    records = [
        _record("google_play", "pro", days_ago=20),
        _record("apple_app_store", "starter", days_ago=5),
        _record("stripe", "enterprise", days_ago=1, conflict=True),
    ]
    effective = resolve(_entitlement(), records, PlanCatalog(), feature=FEATURE_PREVENTIVES, now=NOW)
    assert effective.provider == "apple_app_store"
    assert effective.plan_id == "starter"
    assert effective.source == "billing_provider:apple_app_store"
    # Usage always comes from the primary record.
    assert effective.usage["active_preventives_count"] == 2


def test_fallback_skips_lapsed_and_non_granting_records() -> None:
    records = [
        _record("stripe", "pro", days_ago=1, status="canceled"),
        _record("google_play", "basic", days_ago=2),
    ]
    effective = resolve(_entitlement(), records, PlanCatalog(), feature=FEATURE_PREVENTIVES, now=NOW)
    assert effective.provider == "manual"
    assert effective.source == "primary"


def test_no_fallback_without_a_requested_feature() -> None:
    records = [_record("stripe", "pro", days_ago=1)]
    effective = resolve(_entitlement(), records, PlanCatalog(), now=NOW)
    assert effective.plan_id == "free"


def test_primary_that_grants_is_used_even_when_providers_exist() -> None:
    records = [_record("stripe", "enterprise", days_ago=1)]
    effective = resolve(
        _entitlement(plan_id="pro"), records, PlanCatalog(), feature=FEATURE_PREVENTIVES, now=NOW
    )
    assert effective.plan_id == "pro"
    assert effective.source == "primary"


def test_expired_trial_grants_nothing() -> None:
    effective = merge_entitlement(
        _entitlement(plan_id="pro", status="trialing", trial_ends_at=NOW - timedelta(minutes=1)),
        PlanCatalog(),
    )
    assert effective.is_expired(NOW)
    assert not effective.is_live(NOW)
    assert not effective.grants(FEATURE_PREVENTIVES, NOW)


def test_running_trial_is_live() -> None:
    effective = merge_entitlement(
        _entitlement(plan_id="pro", status="trialing", trial_ends_at=NOW + timedelta(days=3)),
        PlanCatalog(),
    )
    assert effective.is_live(NOW)
    assert effective.grants(FEATURE_PREVENTIVES, NOW)
