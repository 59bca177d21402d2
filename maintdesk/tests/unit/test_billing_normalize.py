from __future__ import annotations

from datetime import datetime, timezone

import pytest

from maintdesk.core.errors import ValidationError
from maintdesk.services.billing.normalize import normalize_event, plan_from_product
from maintdesk.tests.utils.billing import compact_jws, encode_body, pubsub_envelope


JAN_1_2026 = 1767225600
JAN_1_2026_DT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _stripe_subscription(event_type: str, *, status: str = "active", **obj) -> bytes:
    return encode_body(
        {
            "id": "evt_1",
            "type": event_type,
            "created": JAN_1_2026,
            "data": {
                "object": {
                    "id": "sub_1",
                    "status": status,
                    "metadata": {"org_id": "org-1", "plan_id": "pro"},
                    **obj,
                }
            },
        }
    )


def test_stripe_subscription_update_maps_to_canonical_event() -> None:
    event = normalize_event(
        "stripe",
        _stripe_subscription("customer.subscription.updated", current_period_end=JAN_1_2026 + 86400 * 30),
    )
    assert event is not None
    assert event.provider == "stripe"
    assert event.event_id == "evt_1"
    assert event.org_id == "org-1"
    assert event.plan_id == "pro"
    assert event.status == "active"
    assert event.occurred_at == JAN_1_2026_DT
    assert event.current_period_end == datetime(2026, 1, 31, tzinfo=timezone.utc)
    assert event.external_ref == "sub_1"


def test_stripe_subscription_deleted_is_canceled() -> None:
    event = normalize_event("stripe", _stripe_subscription("customer.subscription.deleted"))
    assert event.status == "canceled"


def test_stripe_trial_end_kept_only_while_trialing() -> None:
    trialing = normalize_event(
        "stripe",
        _stripe_subscription("customer.subscription.created", status="trialing", trial_end=JAN_1_2026 + 3600),
    )
    assert trialing.status == "trialing"
    assert trialing.trial_ends_at == datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc)

    active = normalize_event(
        "stripe",
        _stripe_subscription("customer.subscription.updated", trial_end=JAN_1_2026 + 3600),
    )
    assert active.trial_ends_at is None


def test_stripe_plan_from_price_lookup_key() -> None:
    body = encode_body(
        {
            "id": "evt_2",
            "type": "customer.subscription.updated",
            "created": JAN_1_2026,
            "data": {
                "object": {
                    "id": "sub_2",
                    "status": "past_due",
                    "metadata": {"org_id": "org-1"},
                    "items": {"data": [{"price": {"lookup_key": "starter_monthly"}}]},
                }
            },
        }
    )
    event = normalize_event("stripe", body)
    assert event.plan_id == "starter"
    assert event.status == "past_due"


def test_stripe_untracked_event_type_is_ignored() -> None:
    body = encode_body({"id": "evt_3", "type": "charge.refunded", "data": {"object": {}}})
    assert normalize_event("stripe", body) is None


def test_google_play_pubsub_notification() -> None:
    notification = {
        "eventTimeMillis": str(JAN_1_2026 * 1000),
        "subscriptionNotification": {
            "notificationType": 4,
            "subscriptionId": "maintdesk.pro.monthly",
            "purchaseToken": "purchase-token",
            "obfuscatedExternalAccountId": "org-1",
        },
    }
    event = normalize_event("google_play", encode_body(pubsub_envelope(notification, message_id="msg-1")))
    assert event.event_id == "msg-1"
    assert event.event_type == "subscription.4"
    assert event.status == "active"
    assert event.plan_id == "pro"
    assert event.org_id == "org-1"
    assert event.occurred_at == JAN_1_2026_DT
    assert event.external_ref == "purchase-token"


def test_google_play_on_hold_is_past_due() -> None:
    notification = {
        "eventTimeMillis": str(JAN_1_2026 * 1000),
        "subscriptionNotification": {
            "notificationType": 5,
            "subscriptionId": "starter_yearly",
            "obfuscatedExternalAccountId": "org-1",
        },
    }
    event = normalize_event("google_play", encode_body(pubsub_envelope(notification, message_id="msg-2")))
    assert event.status == "past_due"


def test_google_play_test_notification_is_ignored() -> None:
    notification = {"testNotification": {"version": "1.0"}}
    assert normalize_event("google_play", encode_body(pubsub_envelope(notification, message_id="m"))) is None


def test_apple_intro_offer_is_trialing() -> None:
    expires_ms = (JAN_1_2026 + 86400 * 7) * 1000
    transaction = {
        "appAccountToken": "org-1",
        "productId": "maintdesk.starter.yearly",
        "offerType": 1,
        "expiresDate": expires_ms,
        "originalTransactionId": "1000000001",
    }
    notification = {
        "notificationType": "SUBSCRIBED",
        "subtype": "INITIAL_BUY",
        "notificationUUID": "uuid-1",
        "signedDate": JAN_1_2026 * 1000,
        "data": {"signedTransactionInfo": compact_jws(transaction)},
    }
    event = normalize_event("apple_app_store", encode_body({"signedPayload": compact_jws(notification)}))
    assert event.event_id == "uuid-1"
    assert event.event_type == "SUBSCRIBED.INITIAL_BUY"
    assert event.status == "trialing"
    assert event.plan_id == "starter"
    assert event.trial_ends_at == datetime(2026, 1, 8, tzinfo=timezone.utc)
    assert event.current_period_end == event.trial_ends_at
    assert event.external_ref == "1000000001"


def test_apple_expired_is_canceled() -> None:
    transaction = {"appAccountToken": "org-1", "productId": "maintdesk.pro.monthly"}
    notification = {
        "notificationType": "EXPIRED",
        "notificationUUID": "uuid-2",
        "signedDate": JAN_1_2026 * 1000,
        "data": {"signedTransactionInfo": compact_jws(transaction)},
    }
    event = normalize_event("apple_app_store", encode_body({"signedPayload": compact_jws(notification)}))
    assert event.status == "canceled"
    assert event.plan_id == "pro"


def test_apple_test_notification_is_ignored() -> None:
    body = encode_body({"signedPayload": compact_jws({"notificationType": "TEST"})})
    assert normalize_event("apple_app_store", body) is None


def test_apple_malformed_signed_payload_is_rejected() -> None:
    body = encode_body({"signedPayload": "not.a-valid.jws"})
    with pytest.raises(ValidationError):
        normalize_event("apple_app_store", body)


def test_manual_event_fields() -> None:
    body = encode_body(
        {
            "eventId": "manual-1",
            "orgId": "org-1",
            "planId": "starter",
            "status": "active",
            "occurredAt": "2026-01-01T00:00:00Z",
        }
    )
    event = normalize_event("manual", body)
    assert event.event_id == "manual-1"
    assert event.plan_id == "starter"
    assert event.status == "active"
    assert event.occurred_at == JAN_1_2026_DT


def test_manual_unknown_status_degrades_to_past_due() -> None:
    body = encode_body({"eventId": "manual-2", "orgId": "org-1", "status": "suspended"})
    assert normalize_event("manual", body).status == "past_due"


def test_event_id_defaults_to_body_digest() -> None:
    body = encode_body({"orgId": "org-1", "planId": "pro", "status": "active"})
    first = normalize_event("manual", body)
    second = normalize_event("manual", body)
    assert first.event_id == second.event_id
    assert len(first.event_id) == 64


def test_missing_organization_is_rejected() -> None:
    with pytest.raises(ValidationError):
        normalize_event("manual", encode_body({"eventId": "x", "status": "active"}))


def test_malformed_bodies_are_rejected() -> None:
    with pytest.raises(ValidationError):
        normalize_event("manual", b"not json")
    with pytest.raises(ValidationError):
        normalize_event("manual", b"[1, 2]")
    with pytest.raises(ValidationError):
        normalize_event("paypal", b"{}")


def test_plan_from_product() -> None:
    assert plan_from_product("pro") == "pro"
    assert plan_from_product("maintdesk.enterprise.yearly") == "enterprise"
    assert plan_from_product("Starter-Monthly") == "starter"
    assert plan_from_product("maintdesk.gold") is None
    assert plan_from_product(None) is None
