from __future__ import annotations

import hashlib
import hmac
import logging
import time

from maintdesk.core.config import Settings, get_settings
from maintdesk.core.errors import SignatureVerificationError
from maintdesk.services.entitlements import (
    PROVIDER_APPLE_APP_STORE,
    PROVIDER_GOOGLE_PLAY,
    PROVIDER_MANUAL,
    PROVIDER_STRIPE,
)


logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
BILLING_SIGNATURE_HEADER = "X-Billing-Signature"


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Hex HMAC-SHA256 over the raw request body.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_stripe_signature(secret: str, payload: bytes, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _secret_for(provider: str, settings: Settings) -> str | None:
    return {
        PROVIDER_STRIPE: settings.stripe_webhook_secret,
        PROVIDER_GOOGLE_PLAY: settings.google_play_webhook_secret,
        PROVIDER_APPLE_APP_STORE: settings.apple_app_store_webhook_secret,
        PROVIDER_MANUAL: settings.manual_webhook_secret,
    }.get(provider)


def _verify_stripe(secret: str, payload: bytes, header: str | None, tolerance_s: int, now: float) -> None:
    if not header:
        raise SignatureVerificationError("Missing Stripe-Signature header")
    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureVerificationError("Malformed Stripe-Signature timestamp") from exc
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        raise SignatureVerificationError("Malformed Stripe-Signature header")
    if tolerance_s > 0 and abs(now - timestamp) > tolerance_s:
        raise SignatureVerificationError("Stripe signature timestamp outside tolerance")
    expected = build_stripe_signature(secret, payload, timestamp).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise SignatureVerificationError("Stripe signature mismatch")


def verify_webhook_signature(
    provider: str,
    payload: bytes,
    headers: dict[str, str],
    *,
    settings: Settings | None = None,
    now: float | None = None,
) -> None:
    # Fail closed: an unconfigured secret rejects every delivery for that provider.
    settings = settings or get_settings()
    secret = _secret_for(provider, settings)
    if not secret:
        logger.warning("billing_webhook_secret_missing provider=%s", provider)
        raise SignatureVerificationError(f"Webhook secret not configured for {provider}")

    lowered = {key.lower(): value for key, value in headers.items()}
    if provider == PROVIDER_STRIPE:
        _verify_stripe(
            secret,
            payload,
            lowered.get(STRIPE_SIGNATURE_HEADER.lower()),
            int(settings.stripe_signature_tolerance_s),
            time.time() if now is None else now,
        )
        return

    signature = lowered.get(BILLING_SIGNATURE_HEADER.lower())
    if not signature:
        raise SignatureVerificationError("Missing X-Billing-Signature header")
    expected = build_billing_signature(secret, payload)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureVerificationError("Webhook signature mismatch")
