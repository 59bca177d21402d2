from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.errors import EntitlementNotFound, ProviderConflict, TransientStoreError, ValidationError
from maintdesk.domain.models import BillingEventReceipt, BillingProviderRecord
from maintdesk.services.audit import record_event
from maintdesk.services.billing.normalize import BillingEvent
from maintdesk.services.entitlements import (
    ENTITLEMENT_STATUSES,
    LIVE_STATUSES,
    PROVIDER_MANUAL,
    STATUS_TRIALING,
    EffectiveEntitlement,
    EntitlementState,
    load_entitlement_state,
)
from maintdesk.services.plan_catalog import FEATURE_KEYS, FEATURE_PREVENTIVES, LIMIT_KEYS
from maintdesk.services.quota import recurring_generation_granted


logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_CONFLICT = "conflict"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"


@dataclass(frozen=True)
class ReconcileResult:
    # Outcome of one webhook delivery, returned to the provider and written to the audit trail.
    outcome: str
    provider: str
    event_id: str
    org_id: str
    plan_id: str | None = None
    status: str | None = None
    conflict_reason: str | None = None
    resumed: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _record_is_live(record: BillingProviderRecord, now: datetime) -> bool:
    if record.conflict or record.status not in LIVE_STATUSES:
        return False
    return record.trial_ends_at is None or record.trial_ends_at > now


def _primary_is_live(state: EntitlementState, now: datetime) -> bool:
    entitlement = state.entitlement
    if entitlement.status not in LIVE_STATUSES:
        return False
    if entitlement.status == STATUS_TRIALING and entitlement.trial_ends_at is not None:
        return entitlement.trial_ends_at > now
    return True


def _is_seeded_trial(state: EntitlementState) -> bool:
    # The trial a tenant starts with has no manual subscription behind it and yields to any paid channel.
    entitlement = state.entitlement
    return (
        entitlement.provider == PROVIDER_MANUAL
        and entitlement.status == STATUS_TRIALING
        and not any(record.provider == PROVIDER_MANUAL for record in state.provider_records)
    )


def _blocking_provider(state: EntitlementState, incoming: str, now: datetime) -> str | None:
    # A live primary attributed to another provider blocks the incoming channel.
    primary_provider = state.entitlement.provider
    if primary_provider == incoming or _is_seeded_trial(state):
        return None
    if not _primary_is_live(state, now):
        return None
    record = next((r for r in state.provider_records if r.provider == primary_provider), None)
    if record is not None and not _record_is_live(record, now):
        return None
    return primary_provider


def _upsert_provider_record(
    session: AsyncSession,
    state: EntitlementState,
    event: BillingEvent,
    *,
    plan_id: str,
    now: datetime,
    conflict_reason: str | None,
) -> BillingProviderRecord:
    record = next((r for r in state.provider_records if r.provider == event.provider), None)
    if record is None:
        record = BillingProviderRecord(org_id=state.organization.id, provider=event.provider)
        session.add(record)
        state.provider_records.append(record)
    record.plan_id = plan_id
    record.status = event.status
    record.trial_ends_at = event.trial_ends_at
    record.current_period_end = event.current_period_end
    record.conflict = conflict_reason is not None
    record.conflict_reason = conflict_reason
    record.external_ref = event.external_ref or record.external_ref
    record.updated_at = event.occurred_at
    record.received_at = now
    return record


def replace_primary(
    state: EntitlementState,
    *,
    plan_id: str,
    status: str,
    provider: str,
    trial_ends_at: datetime | None,
    current_period_end: datetime | None,
    now: datetime,
) -> None:
    # Usage counters are untouched; a plan change drops overrides so limits come from the catalog.
    entitlement = state.entitlement
    if entitlement.plan_id != plan_id:
        entitlement.limits_json = None
        entitlement.features_json = None
    entitlement.plan_id = plan_id
    entitlement.status = status
    entitlement.provider = provider
    entitlement.trial_ends_at = trial_ends_at if status == STATUS_TRIALING else None
    entitlement.current_period_end = current_period_end
    entitlement.updated_at = now


async def _is_duplicate(session: AsyncSession, event: BillingEvent) -> bool:
    result = await session.execute(
        select(BillingEventReceipt.id).where(
            BillingEventReceipt.provider == event.provider,
            BillingEventReceipt.event_id == event.event_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def reconcile_event(
    session: AsyncSession,
    event: BillingEvent,
    *,
    now: datetime | None = None,
    request_id: str | None = None,
) -> ReconcileResult:
    """Apply a normalized billing event under the organization row lock.

    Redeliveries are dropped by receipt, older events lose to newer ones per
    provider, and a live subscription from another provider turns the event
    into a stored conflict instead of replacing the primary entitlement.
    """
    now = now or _utc_now()
    in_transaction = session.in_transaction()
    tx_context = session.begin_nested() if in_transaction else session.begin()
    try:
        async with tx_context:
            if await _is_duplicate(session, event):
                result = ReconcileResult(OUTCOME_DUPLICATE, event.provider, event.event_id, event.org_id)
            else:
                state = await load_entitlement_state(session, event.org_id, for_update=True)
                result = _apply(session, state, event, now=now)
                session.add(
                    BillingEventReceipt(
                        provider=event.provider,
                        event_id=event.event_id,
                        org_id=event.org_id,
                        event_type=event.event_type,
                        outcome=result.outcome,
                        received_at=now,
                    )
                )
                await record_event(
                    session=session,
                    org_id=event.org_id,
                    actor_type="billing_provider",
                    actor_id=event.provider,
                    event_type=f"billing.event.{result.outcome}",
                    outcome="success",
                    resource_type="entitlement",
                    resource_id=event.org_id,
                    request_id=request_id,
                    metadata={
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "plan_id": result.plan_id,
                        "status": result.status,
                        "conflict_reason": result.conflict_reason,
                    },
                )
        if in_transaction:
            await session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event committed its receipt first.
        await session.rollback()
        logger.info(
            "billing_event_duplicate_race provider=%s event_id=%s", event.provider, event.event_id
        )
        return ReconcileResult(OUTCOME_DUPLICATE, event.provider, event.event_id, event.org_id)
    except EntitlementNotFound:
        await record_event(
            org_id=None,
            actor_type="billing_provider",
            actor_id=event.provider,
            event_type="billing.event.unmatched",
            outcome="failure",
            request_id=request_id,
            metadata={"event_id": event.event_id, "org_id": event.org_id},
            error_code=EntitlementNotFound.code,
        )
        raise
    except DBAPIError as exc:
        logger.warning(
            "billing_event_store_error provider=%s event_id=%s", event.provider, event.event_id, exc_info=exc
        )
        raise TransientStoreError("Billing event could not be stored; retry the delivery") from exc

    logger.info(
        "billing_event_reconciled provider=%s event_id=%s org_id=%s outcome=%s",
        event.provider,
        event.event_id,
        event.org_id,
        result.outcome,
    )
    if result.outcome == OUTCOME_APPLIED:
        resumed = await _resume_if_granted(session, event.org_id, now=now)
        if resumed:
            result = replace(result, resumed=True)
    return result


def _apply(
    session: AsyncSession,
    state: EntitlementState,
    event: BillingEvent,
    *,
    now: datetime,
) -> ReconcileResult:
    existing = next((r for r in state.provider_records if r.provider == event.provider), None)
    if existing is not None and existing.updated_at > event.occurred_at:
        # Last write wins per provider; an older delivery never overwrites newer state.
        logger.info(
            "billing_event_stale provider=%s event_id=%s org_id=%s",
            event.provider,
            event.event_id,
            event.org_id,
        )
        return ReconcileResult(OUTCOME_STALE, event.provider, event.event_id, event.org_id)

    plan_id = event.plan_id or (existing.plan_id if existing is not None else None)
    if plan_id is None and state.entitlement.provider == event.provider:
        plan_id = state.entitlement.plan_id
    if plan_id is None:
        raise ValidationError(f"{event.provider} event does not identify a plan", field="plan_id")
    if not state.catalog.has(plan_id):
        logger.warning("billing_event_unknown_plan provider=%s plan_id=%s", event.provider, plan_id)

    blocking = _blocking_provider(state, event.provider, now)
    if blocking is not None:
        conflict = ProviderConflict(event.provider, blocking_provider=blocking)
        _upsert_provider_record(session, state, event, plan_id=plan_id, now=now, conflict_reason=conflict.reason)
        logger.warning(
            "billing_provider_conflict org_id=%s provider=%s blocking_provider=%s",
            event.org_id,
            event.provider,
            blocking,
        )
        return ReconcileResult(
            OUTCOME_CONFLICT,
            event.provider,
            event.event_id,
            event.org_id,
            plan_id=plan_id,
            status=event.status,
            conflict_reason=conflict.reason,
        )

    _upsert_provider_record(session, state, event, plan_id=plan_id, now=now, conflict_reason=None)
    replace_primary(
        state,
        plan_id=plan_id,
        status=event.status,
        provider=event.provider,
        trial_ends_at=event.trial_ends_at,
        current_period_end=event.current_period_end,
        now=now,
    )
    return ReconcileResult(
        OUTCOME_APPLIED,
        event.provider,
        event.event_id,
        event.org_id,
        plan_id=plan_id,
        status=event.status,
    )


async def _resume_if_granted(session: AsyncSession, org_id: str, *, now: datetime) -> bool:
    # Imported lazily: sweeps depend on the entitlement layer, not the other way round.
    from maintdesk.services.scheduling.sweeps import PAUSE_REASON_FEATURE_LOST, resume_organization

    state = await load_entitlement_state(session, org_id)
    organization = state.organization
    # Only a feature-loss pause lifts with the plan; demo expiry stays paused whatever the tenant buys.
    resumable = (
        organization.preventives_paused
        and organization.preventives_paused_reason == PAUSE_REASON_FEATURE_LOST
        and recurring_generation_granted(state.resolve(feature=FEATURE_PREVENTIVES, now=now), is_demo=False, now=now)
    )
    await session.commit()
    if not resumable:
        return False
    await resume_organization(session, org_id, now=now)
    return True



async def apply_entitlement_override(
    session: AsyncSession,
    org_id: str,
    *,
    plan_id: str | None = None,
    status: str | None = None,
    limits: dict[str, Any] | None = None,
    features: dict[str, Any] | None = None,
    trial_ends_at: datetime | None = None,
    current_period_end: datetime | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> EffectiveEntitlement:
    """Force-set the primary entitlement as the platform operator.

    Provider precedence does not apply. Limits still resolve through the
    catalog merge, with any explicit overrides stored on top.
    """
    now = now or _utc_now()
    if status is not None and status not in ENTITLEMENT_STATUSES:
        raise ValidationError(f"Unsupported entitlement status: {status}", field="status")
    unknown_limits = set(limits or {}) - set(LIMIT_KEYS)
    if unknown_limits:
        raise ValidationError(f"Unknown limit keys: {sorted(unknown_limits)}", field="limits")
    unknown_features = set(features or {}) - set(FEATURE_KEYS)
    if unknown_features:
        raise ValidationError(f"Unknown feature keys: {sorted(unknown_features)}", field="features")

    in_transaction = session.in_transaction()
    tx_context = session.begin_nested() if in_transaction else session.begin()
    try:
        async with tx_context:
            state = await load_entitlement_state(session, org_id, for_update=True)
            if plan_id is not None and not state.catalog.has(plan_id):
                raise ValidationError(f"Unknown plan: {plan_id}", field="plan_id")
            before = {"plan_id": state.entitlement.plan_id, "status": state.entitlement.status}
            resolved_status = status or state.entitlement.status
            replace_primary(
                state,
                plan_id=plan_id or state.entitlement.plan_id,
                status=resolved_status,
                provider=PROVIDER_MANUAL,
                trial_ends_at=trial_ends_at if trial_ends_at is not None else state.entitlement.trial_ends_at,
                current_period_end=current_period_end
                if current_period_end is not None
                else state.entitlement.current_period_end,
                now=now,
            )
            if limits is not None:
                state.entitlement.limits_json = {**(state.entitlement.limits_json or {}), **limits}
            if features is not None:
                state.entitlement.features_json = {**(state.entitlement.features_json or {}), **features}
            effective = state.resolve(now=now)
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="root",
                actor_id=actor_id,
                actor_role="root",
                event_type="entitlement.override",
                outcome="success",
                resource_type="entitlement",
                resource_id=org_id,
                request_id=request_id,
                metadata={
                    "before": before,
                    "plan_id": effective.plan_id,
                    "status": effective.status,
                    "limits": limits,
                    "features": features,
                },
            )
        if in_transaction:
            await session.commit()
    except DBAPIError as exc:
        raise TransientStoreError("Entitlement override could not be stored") from exc

    logger.info(
        "entitlement_override_applied org_id=%s plan_id=%s status=%s actor_id=%s",
        org_id,
        effective.plan_id,
        effective.status,
        actor_id,
    )
    await _resume_if_granted(session, org_id, now=now)
    return effective
