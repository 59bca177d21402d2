from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.apps.api.deps import get_db
from maintdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maintdesk.apps.api.response import SuccessEnvelope, get_request_id, success_response
from maintdesk.core.errors import SignatureVerificationError, ValidationError
from maintdesk.services.audit import record_event
from maintdesk.services.billing import normalize_event, reconcile_event, verify_webhook_signature
from maintdesk.services.entitlements import PROVIDERS


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookResponse(BaseModel):
    outcome: str
    provider: str
    event_id: str | None = None
    org_id: str | None = None
    plan_id: str | None = None
    status: str | None = None
    conflict_reason: str | None = None
    resumed: bool = False


@router.post("/webhooks/{provider}", response_model=SuccessEnvelope[WebhookResponse])
async def billing_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Receive a provider notification.

    The signature is checked over the raw body before anything is parsed.
    Event types that carry no entitlement state are acknowledged as ignored so
    the provider stops redelivering them.
    """
    if provider not in PROVIDERS:
        raise ValidationError(f"Unsupported billing provider: {provider}", field="provider")
    body = await request.body()
    request_id = get_request_id(request)
    try:
        verify_webhook_signature(provider, body, dict(request.headers))
    except SignatureVerificationError as exc:
        logger.warning("billing_webhook_rejected provider=%s reason=%s", provider, exc)
        await record_event(
            org_id=None,
            actor_type="billing_provider",
            actor_id=provider,
            event_type="billing.webhook.rejected",
            outcome="failure",
            resource_type="billing_event",
            request_id=request_id,
            error_code=exc.code,
        )
        raise

    event = normalize_event(provider, body)
    if event is None:
        return success_response(request=request, data=WebhookResponse(outcome="ignored", provider=provider))
    result = await reconcile_event(db, event, request_id=request_id)
    return success_response(
        request=request,
        data=WebhookResponse(
            outcome=result.outcome,
            provider=result.provider,
            event_id=result.event_id,
            org_id=result.org_id,
            plan_id=result.plan_id,
            status=result.status,
            conflict_reason=result.conflict_reason,
            resumed=result.resumed,
        ),
    )
