from __future__ import annotations

from datetime import datetime, timezone

import pytest

from maintdesk.tests.utils.api import api_client, org_headers
from maintdesk.tests.utils.billing import encode_body, signed_headers
from maintdesk.tests.utils.factories import audit_event_types, create_org, create_template_row


_WEEKLY_TEMPLATE = {"name": "Fire extinguisher check", "schedule": {"type": "weekly", "days_of_week": [1]}}


async def _full_free_org() -> str:
    # Free plan with all three active-preventive slots taken.
    org_id = await create_org(plan_id="free", active_preventives_count=3)
    for _ in range(3):
        await create_template_row(org_id, automatic=False)
    return org_id


@pytest.mark.asyncio
async def test_quota_denial_then_upgrade_then_retry() -> None:
    org_id = await _full_free_org()

    async with api_client() as client:
        denied = await client.post(
            f"/v1/organizations/{org_id}/preventive-templates",
            json=_WEEKLY_TEMPLATE,
            headers=org_headers(org_id, role="maintenance"),
        )
        assert denied.status_code == 412
        error = denied.json()["error"]
        assert error["code"] == "QUOTA_EXCEEDED"
        assert error["details"] == {"kind": "preventives", "limit": 3, "used": 3}
        assert "request_id" in denied.json()["meta"]

        body = encode_body(
            {
                "eventId": "manual-upgrade-1",
                "orgId": org_id,
                "planId": "starter",
                "status": "active",
                "occurredAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        webhook = await client.post("/v1/billing/webhooks/manual", content=body, headers=signed_headers("manual", body))
        assert webhook.status_code == 200
        assert webhook.json()["data"]["outcome"] == "applied"
        assert webhook.json()["data"]["plan_id"] == "starter"

        retried = await client.post(
            f"/v1/organizations/{org_id}/preventive-templates",
            json=_WEEKLY_TEMPLATE,
            headers=org_headers(org_id, role="maintenance"),
        )
        assert retried.status_code == 201
        assert retried.json()["data"]["status"] == "active"

        entitlement = await client.get(f"/v1/organizations/{org_id}/entitlement", headers=org_headers(org_id))
    data = entitlement.json()["data"]
    assert data["plan_id"] == "starter"
    assert data["usage"]["active_preventives_count"] == 4
    assert data["can_create"]["preventives"]["allowed"] is True
    assert "preventive_template.quota_denied" in await audit_event_types(org_id)


@pytest.mark.asyncio
async def test_quota_message_follows_accept_language() -> None:
    org_id = await _full_free_org()
    headers = {**org_headers(org_id, role="maintenance"), "Accept-Language": "es-ES,es;q=0.9"}

    async with api_client() as client:
        response = await client.post(
            f"/v1/organizations/{org_id}/preventive-templates", json=_WEEKLY_TEMPLATE, headers=headers
        )

    assert response.status_code == 412
    assert response.json()["error"]["message"].startswith("Tu plan permite 3 preventivos activos")


@pytest.mark.asyncio
async def test_entitlement_read_model_explains_disabled_actions() -> None:
    org_id = await create_org(plan_id="free", sites_count=1)

    async with api_client() as client:
        response = await client.get(f"/v1/organizations/{org_id}/entitlement", headers=org_headers(org_id, "operator"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["limits"]["max_sites"] == 1
    assert data["features"]["PREVENTIVES"] is False
    assert data["can_create"]["sites"]["allowed"] is False
    assert data["can_create"]["sites"]["code"] == "QUOTA_EXCEEDED"
    assert data["can_create"]["departments"]["allowed"] is True
    assert data["can_create"]["preventives"] == {
        "allowed": False,
        "reason": "Recurring preventive maintenance is not included in the free plan.",
        "code": "FEATURE_NOT_ENABLED",
    }


@pytest.mark.asyncio
async def test_bad_webhook_signature_is_rejected_before_parsing() -> None:
    org_id = await create_org(plan_id="free")
    body = encode_body({"eventId": "forged", "orgId": org_id, "planId": "enterprise", "status": "active"})

    async with api_client() as client:
        response = await client.post(
            "/v1/billing/webhooks/manual",
            content=body,
            headers={"Content-Type": "application/json", "X-Billing-Signature": "0" * 64},
        )
        unknown = await client.post("/v1/billing/webhooks/paypal", content=body)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert unknown.status_code == 422
    assert "billing.webhook.rejected" in await audit_event_types()


@pytest.mark.asyncio
async def test_webhook_for_unknown_organization_is_not_found() -> None:
    body = encode_body({"eventId": "orphan", "orgId": "org-nowhere", "planId": "pro", "status": "active"})

    async with api_client() as client:
        response = await client.post("/v1/billing/webhooks/manual", content=body, headers=signed_headers("manual", body))

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ENTITLEMENT_NOT_FOUND"
