from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Callable

import jwt

from maintdesk.core.errors import ValidationError
from maintdesk.services.entitlements import (
    ENTITLEMENT_STATUSES,
    PROVIDER_APPLE_APP_STORE,
    PROVIDER_GOOGLE_PLAY,
    PROVIDER_MANUAL,
    PROVIDER_STRIPE,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
)
from maintdesk.services.plan_catalog import PLAN_IDS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingEvent:
    # Canonical event shape; provider field names never travel past this module.
    provider: str
    event_id: str
    event_type: str
    org_id: str
    status: str
    occurred_at: datetime
    plan_id: str | None = None
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    external_ref: str | None = None


def payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _from_epoch(value: Any, *, millis: bool = False) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        seconds = float(value) / (1000.0 if millis else 1.0)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _from_iso(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def plan_from_product(product_id: str | None) -> str | None:
    # Store product ids embed the plan, e.g. "maintdesk.pro.monthly" or "starter_yearly".
    if not product_id:
        return None
    lowered = product_id.lower()
    if lowered in PLAN_IDS:
        return lowered
    tokens = lowered.replace(".", "_").replace("-", "_").split("_")
    for plan_id in PLAN_IDS:
        if plan_id in tokens:
            return plan_id
    return None


def _require_org(org_id: Any, provider: str) -> str:
    if not org_id:
        raise ValidationError(f"{provider} event does not identify an organization", field="org_id")
    return str(org_id)


# Stripe ---------------------------------------------------------------------

_STRIPE_STATUS = {
    "trialing": STATUS_TRIALING,
    "active": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELED,
    "incomplete_expired": STATUS_CANCELED,
}
_STRIPE_SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


def _stripe_plan(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    if metadata.get("plan_id"):
        return str(metadata["plan_id"])
    items = ((obj.get("items") or {}).get("data")) or []
    for item in items:
        price = item.get("price") or {}
        plan = (price.get("metadata") or {}).get("plan_id") or plan_from_product(price.get("lookup_key"))
        if plan:
            return str(plan)
    return None


def normalize_stripe(payload: dict[str, Any], digest: str) -> BillingEvent | None:
    event_type = str(payload.get("type") or "")
    obj = (payload.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    occurred_at = _from_epoch(payload.get("created")) or datetime.now(timezone.utc)
    event_id = str(payload.get("id") or digest)

    if event_type == "checkout.session.completed":
        org_id = obj.get("client_reference_id") or metadata.get("org_id")
        return BillingEvent(
            provider=PROVIDER_STRIPE,
            event_id=event_id,
            event_type=event_type,
            org_id=_require_org(org_id, PROVIDER_STRIPE),
            status=STATUS_ACTIVE,
            occurred_at=occurred_at,
            plan_id=metadata.get("plan_id"),
            external_ref=obj.get("subscription"),
        )

    if event_type in _STRIPE_SUBSCRIPTION_EVENTS:
        if event_type == "customer.subscription.deleted":
            status = STATUS_CANCELED
        else:
            status = _STRIPE_STATUS.get(str(obj.get("status") or ""), STATUS_PAST_DUE)
        return BillingEvent(
            provider=PROVIDER_STRIPE,
            event_id=event_id,
            event_type=event_type,
            org_id=_require_org(metadata.get("org_id"), PROVIDER_STRIPE),
            status=status,
            occurred_at=occurred_at,
            plan_id=_stripe_plan(obj),
            trial_ends_at=_from_epoch(obj.get("trial_end")),
            current_period_end=_from_epoch(obj.get("current_period_end")),
            external_ref=obj.get("id"),
        )

    if event_type == "invoice.payment_failed":
        details = (obj.get("subscription_details") or {}).get("metadata") or {}
        org_id = details.get("org_id") or metadata.get("org_id")
        return BillingEvent(
            provider=PROVIDER_STRIPE,
            event_id=event_id,
            event_type=event_type,
            org_id=_require_org(org_id, PROVIDER_STRIPE),
            status=STATUS_PAST_DUE,
            occurred_at=occurred_at,
            plan_id=details.get("plan_id"),
            external_ref=obj.get("subscription"),
        )

    return None


# Google Play ----------------------------------------------------------------

# Real-time developer notification subscription types.
_GOOGLE_PLAY_STATUS = {
    1: STATUS_ACTIVE,  # recovered
    2: STATUS_ACTIVE,  # renewed
    3: STATUS_CANCELED,
    4: STATUS_ACTIVE,  # purchased
    5: STATUS_PAST_DUE,  # on hold
    6: STATUS_PAST_DUE,  # grace period
    7: STATUS_ACTIVE,  # restarted
    8: STATUS_ACTIVE,  # price change confirmed
    9: STATUS_ACTIVE,  # deferred
    10: STATUS_PAST_DUE,  # paused
    11: STATUS_ACTIVE,  # pause schedule changed
    12: STATUS_CANCELED,  # revoked
    13: STATUS_CANCELED,  # expired
    20: STATUS_CANCELED,  # pending purchase canceled
}


def _unwrap_pubsub(payload: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    message = payload.get("message")
    if not isinstance(message, dict) or "data" not in message:
        return payload, None
    try:
        decoded = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Invalid Pub/Sub message data") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("Invalid Pub/Sub message data")
    return decoded, message.get("messageId") or message.get("message_id")


def normalize_google_play(payload: dict[str, Any], digest: str) -> BillingEvent | None:
    notification, message_id = _unwrap_pubsub(payload)
    sub = notification.get("subscriptionNotification")
    if not isinstance(sub, dict):
        # Test and one-time product notifications carry no subscription state.
        return None
    try:
        notification_type = int(sub.get("notificationType"))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Missing subscription notificationType") from exc
    org_id = sub.get("obfuscatedExternalAccountId") or notification.get("orgId")
    return BillingEvent(
        provider=PROVIDER_GOOGLE_PLAY,
        event_id=str(message_id or digest),
        event_type=f"subscription.{notification_type}",
        org_id=_require_org(org_id, PROVIDER_GOOGLE_PLAY),
        status=_GOOGLE_PLAY_STATUS.get(notification_type, STATUS_PAST_DUE),
        occurred_at=_from_epoch(notification.get("eventTimeMillis"), millis=True)
        or datetime.now(timezone.utc),
        plan_id=notification.get("planId") or plan_from_product(sub.get("subscriptionId")),
        current_period_end=_from_epoch(sub.get("expiryTimeMillis"), millis=True),
        external_ref=sub.get("purchaseToken"),
    )


# App Store ------------------------------------------------------------------

_APP_STORE_STATUS = {
    "SUBSCRIBED": STATUS_ACTIVE,
    "DID_RENEW": STATUS_ACTIVE,
    "DID_CHANGE_RENEWAL_PREF": STATUS_ACTIVE,
    "DID_CHANGE_RENEWAL_STATUS": STATUS_ACTIVE,
    "OFFER_REDEEMED": STATUS_ACTIVE,
    "DID_FAIL_TO_RENEW": STATUS_PAST_DUE,
    "EXPIRED": STATUS_CANCELED,
    "GRACE_PERIOD_EXPIRED": STATUS_CANCELED,
    "REFUND": STATUS_CANCELED,
    "REVOKE": STATUS_CANCELED,
}
# offerType 1 is an introductory offer (free trial).
_APP_STORE_INTRO_OFFER = 1


def _jws_claims(token: Any) -> dict[str, Any]:
    # Read the claims of a compact JWS; the transport signature was already verified.
    if isinstance(token, dict):
        return token
    if not isinstance(token, str):
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as exc:
        raise ValidationError("Invalid App Store signed payload") from exc



def normalize_apple_app_store(payload: dict[str, Any], digest: str) -> BillingEvent | None:
    notification = _jws_claims(payload["signedPayload"]) if "signedPayload" in payload else payload
    notification_type = str(notification.get("notificationType") or "")
    if not notification_type or notification_type == "TEST":
        return None
    data = notification.get("data") or {}
    transaction = _jws_claims(data.get("signedTransactionInfo") or data.get("transactionInfo") or {})

    status = _APP_STORE_STATUS.get(notification_type, STATUS_PAST_DUE)
    expires_at = _from_epoch(transaction.get("expiresDate"), millis=True)
    trial_ends_at = None
    if status == STATUS_ACTIVE and transaction.get("offerType") == _APP_STORE_INTRO_OFFER:
        status = STATUS_TRIALING
        trial_ends_at = expires_at

    subtype = notification.get("subtype")
    org_id = transaction.get("appAccountToken") or notification.get("orgId")
    return BillingEvent(
        provider=PROVIDER_APPLE_APP_STORE,
        event_id=str(notification.get("notificationUUID") or digest),
        event_type=f"{notification_type}.{subtype}" if subtype else notification_type,
        org_id=_require_org(org_id, PROVIDER_APPLE_APP_STORE),
        status=status,
        occurred_at=_from_epoch(notification.get("signedDate"), millis=True) or datetime.now(timezone.utc),
        plan_id=notification.get("planId") or plan_from_product(transaction.get("productId")),
        trial_ends_at=trial_ends_at,
        current_period_end=expires_at,
        external_ref=transaction.get("originalTransactionId"),
    )


# Manual ---------------------------------------------------------------------


def normalize_manual(payload: dict[str, Any], digest: str) -> BillingEvent | None:
    raw_status = str(payload.get("status") or "")
    return BillingEvent(
        provider=PROVIDER_MANUAL,
        event_id=str(payload.get("eventId") or payload.get("event_id") or digest),
        event_type=str(payload.get("type") or "manual.update"),
        org_id=_require_org(payload.get("orgId") or payload.get("org_id"), PROVIDER_MANUAL),
        status=raw_status if raw_status in ENTITLEMENT_STATUSES else STATUS_PAST_DUE,
        occurred_at=_from_iso(payload.get("occurredAt") or payload.get("occurred_at"))
        or datetime.now(timezone.utc),
        plan_id=payload.get("planId") or payload.get("plan_id"),
        trial_ends_at=_from_iso(payload.get("trialEndsAt") or payload.get("trial_ends_at")),
        current_period_end=_from_iso(payload.get("currentPeriodEnd") or payload.get("current_period_end")),
        external_ref=payload.get("reference"),
    )


_NORMALIZERS: dict[str, Callable[[dict[str, Any], str], BillingEvent | None]] = {
    PROVIDER_STRIPE: normalize_stripe,
    PROVIDER_GOOGLE_PLAY: normalize_google_play,
    PROVIDER_APPLE_APP_STORE: normalize_apple_app_store,
    PROVIDER_MANUAL: normalize_manual,
}


def normalize_event(provider: str, body: bytes) -> BillingEvent | None:
    """Parse a verified webhook body into a ``BillingEvent``.

    Returns None for event types that carry no entitlement state.
    """
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        raise ValidationError(f"Unsupported billing provider: {provider}", field="provider")
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event = normalizer(payload, payload_digest(body))
    if event is None:
        logger.info("billing_event_ignored provider=%s", provider)
        return event
    if event.status != STATUS_TRIALING and event.trial_ends_at is not None:
        # Trial end only means something while the subscription is trialing.
        event = replace(event, trial_ends_at=None)
    return event
