from __future__ import annotations

from datetime import date, datetime, timezone

from maintdesk.services.audit import scrub_metadata


def test_credential_keys_are_masked_at_any_depth() -> None:
    metadata = {
        "event_id": "evt-1",
        "headers": {"Stripe-Signature": "t=1,v1=abc", "X-Billing-Signature": "ff"},
        "attempts": [{"webhook_secret": "whsec"}, {"plan_id": "pro"}],
    }

    assert scrub_metadata(metadata) == {
        "event_id": "evt-1",
        "headers": {"Stripe-Signature": "[REDACTED]", "X-Billing-Signature": "[REDACTED]"},
        "attempts": [{"webhook_secret": "[REDACTED]"}, {"plan_id": "pro"}],
    }


def test_dates_become_iso_strings() -> None:
    scheduled = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)

    assert scrub_metadata({"scheduled_for": scheduled, "day": date(2026, 3, 2), "days": (2, 4)}) == {
        "scheduled_for": "2026-03-02T07:00:00+00:00",
        "day": "2026-03-02",
        "days": [2, 4],
    }
