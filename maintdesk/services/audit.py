from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.domain.models import AuditEvent
from maintdesk.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Webhook bodies and gateway headers are the only places credentials show up in metadata.
_REDACTED_FRAGMENTS = ("secret", "signature", "token", "password", "authorization")
_REDACTED = "[REDACTED]"


def scrub_metadata(value: Any) -> Any:
    """Make audit metadata safe and JSON-ready.

    Keys containing a credential fragment are masked at any depth, and
    dates become ISO strings so the JSON column accepts them on every backend.
    """
    if isinstance(value, dict):
        scrubbed: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(fragment in key.lower() for fragment in _REDACTED_FRAGMENTS):
                scrubbed[key] = _REDACTED
            else:
                scrubbed[key] = scrub_metadata(raw_value)
        return scrubbed
    if isinstance(value, (list, tuple)):
        return [scrub_metadata(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _write_failed(event: AuditEvent, exc: Exception) -> None:
    logger.warning(
        "audit_event_write_failed event_type=%s org_id=%s resource_id=%s",
        event.event_type,
        event.org_id,
        event.resource_id,
        exc_info=exc,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    org_id: str | None,
    actor_type: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    """Append one row to the tenant audit trail.

    With a caller session the row joins the caller's transaction and is only
    committed when ``commit`` is set. Without one the row is written in its own
    session, which is how denials are kept after the gated write rolls back.
    A failed audit write is logged and never raised.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        org_id=org_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=scrub_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            audit_session.add(event)
            try:
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _write_failed(event, exc)
        return

    session.add(event)
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        _write_failed(event, exc)
