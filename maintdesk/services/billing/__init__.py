from maintdesk.services.billing.normalize import BillingEvent, normalize_event
from maintdesk.services.billing.reconciler import (
    ReconcileResult,
    apply_entitlement_override,
    reconcile_event,
)
from maintdesk.services.billing.signatures import verify_webhook_signature

__all__ = [
    "BillingEvent",
    "ReconcileResult",
    "apply_entitlement_override",
    "normalize_event",
    "reconcile_event",
    "verify_webhook_signature",
]
