from __future__ import annotations

from typing import Any


class MaintdeskError(Exception):
    """Base error for maintdesk."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.details = details or {}

    def message_for(self, locale: str | None = None) -> str:
        # Subclasses with user-facing copy override this; the default is locale-agnostic.
        return str(self)


class ValidationError(MaintdeskError):
    """Malformed schedule or template input."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


_QUOTA_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "sites": "Your plan allows {limit} sites and you already have {used}. Upgrade your plan to add more sites.",
        "assets": "Your plan allows {limit} assets and you already have {used}. Upgrade your plan to add more assets.",
        "departments": "Your plan allows {limit} departments and you already have {used}. Upgrade your plan to add more departments.",
        "users": "Your plan allows {limit} users and you already have {used}. Upgrade your plan to invite more users.",
        "preventives": "Your plan allows {limit} active preventive templates and you already have {used}. Pause or archive one, or upgrade your plan.",
    },
    "es": {
        "sites": "Tu plan permite {limit} ubicaciones y ya tienes {used}. Mejora tu plan para crear más ubicaciones.",
        "assets": "Tu plan permite {limit} activos y ya tienes {used}. Mejora tu plan para crear más activos.",
        "departments": "Tu plan permite {limit} departamentos y ya tienes {used}. Mejora tu plan para crear más departamentos.",
        "users": "Tu plan permite {limit} usuarios y ya tienes {used}. Mejora tu plan para invitar a más usuarios.",
        "preventives": "Tu plan permite {limit} preventivos activos y ya tienes {used}. Pausa o archiva alguno, o mejora tu plan.",
    },
}


def _lang(locale: str | None) -> str:
    # Match on the primary language subtag ("es-ES,es;q=0.9" -> "es").
    return (locale or "en").split(",")[0].split(";")[0].split("-")[0].strip().lower()


def _pick(table: dict[str, Any], locale: str | None) -> Any:
    return table.get(_lang(locale), table["en"])


class QuotaExceeded(MaintdeskError):
    """Plan limit reached for a resource kind."""

    code = "QUOTA_EXCEEDED"
    status_code = 412

    def __init__(self, kind: str, *, limit: int | None, used: int) -> None:
        self.kind = kind
        self.limit = limit
        self.used = used
        super().__init__(
            self.message_for("en"),
            details={"kind": kind, "limit": limit, "used": used},
        )

    def message_for(self, locale: str | None = None) -> str:
        template = _pick(_QUOTA_MESSAGES, locale)[self.kind]
        return template.format(limit=self.limit, used=self.used)


class EntitlementNotFound(MaintdeskError):
    """Organization or its entitlement does not exist."""

    code = "ENTITLEMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, org_id: str) -> None:
        super().__init__(f"Organization {org_id} has no entitlement", details={"org_id": org_id})
        self.org_id = org_id


_INACTIVE_MESSAGES = {
    "en": "Your subscription is {status}. Renew it to keep creating {kind}.",
    "es": "Tu suscripción está en estado {status}. Renuévala para seguir creando {kind}.",
}
_EXPIRED_MESSAGES = {
    "en": "Your trial has ended. Choose a plan to keep creating {kind}.",
    "es": "Tu periodo de prueba ha terminado. Elige un plan para seguir creando {kind}.",
}


class EntitlementInactive(MaintdeskError):
    """Entitlement is lapsed, canceled or past its trial."""

    code = "ENTITLEMENT_INACTIVE"
    status_code = 412

    def __init__(self, kind: str, *, status: str, expired: bool = False) -> None:
        self.kind = kind
        self.status = status
        self.expired = expired
        super().__init__(
            self.message_for("en"),
            details={"kind": kind, "status": status, "expired": expired},
        )

    def message_for(self, locale: str | None = None) -> str:
        table = _EXPIRED_MESSAGES if self.expired else _INACTIVE_MESSAGES
        return _pick(table, locale).format(status=self.status, kind=self.kind)


_FEATURE_MESSAGES = {
    "en": "Recurring preventive maintenance is not included in the {plan} plan.",
    "es": "El mantenimiento preventivo recurrente no está incluido en el plan {plan}.",
}


class FeatureNotEnabled(MaintdeskError):
    """Resolved plan does not grant the requested capability."""

    code = "FEATURE_NOT_ENABLED"
    status_code = 412

    def __init__(self, feature: str, *, plan_id: str) -> None:
        self.feature = feature
        self.plan_id = plan_id
        super().__init__(
            self.message_for("en"),
            details={"feature": feature, "plan_id": plan_id},
        )

    def message_for(self, locale: str | None = None) -> str:
        return _pick(_FEATURE_MESSAGES, locale).format(plan=self.plan_id)


class ReferenceNotFound(MaintdeskError):
    """Referenced site, department or asset does not exist in the organization."""

    code = "REFERENCE_NOT_FOUND"
    status_code = 412

    def __init__(self, kind: str, ref_id: str) -> None:
        super().__init__(f"{kind} {ref_id} not found in organization", details={"kind": kind, "id": ref_id})
        self.kind = kind
        self.ref_id = ref_id


class NotFoundError(MaintdeskError):
    """Addressed template or ticket does not exist in the organization."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, ref_id: str) -> None:
        super().__init__(f"{kind} {ref_id} not found", details={"kind": kind, "id": ref_id})
        self.kind = kind
        self.ref_id = ref_id


class ProviderConflict(MaintdeskError):
    """Billing event blocked by another active provider; stored, never raised to callers."""

    code = "PROVIDER_CONFLICT"
    status_code = 409

    def __init__(self, provider: str, *, blocking_provider: str) -> None:
        self.provider = provider
        self.blocking_provider = blocking_provider
        super().__init__(
            f"{provider} event blocked by active {blocking_provider} subscription",
            details={"provider": provider, "blocking_provider": blocking_provider},
        )

    @property
    def reason(self) -> str:
        # Machine-readable reason persisted on the provider record.
        return f"primary_provider_active:{self.blocking_provider}"


class SignatureVerificationError(MaintdeskError):
    """Webhook signature missing or invalid."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 400


class TransientStoreError(MaintdeskError):
    """Transaction contention or store I/O failure; safe to retry."""

    code = "STORE_UNAVAILABLE"
    status_code = 503
