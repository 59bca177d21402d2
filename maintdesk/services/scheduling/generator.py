from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable
from uuid import NAMESPACE_URL, uuid5

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from maintdesk.core.config import get_settings
from maintdesk.core.errors import (
    EntitlementInactive,
    EntitlementNotFound,
    FeatureNotEnabled,
    NotFoundError,
    QuotaExceeded,
    TransientStoreError,
    ValidationError,
)
from maintdesk.domain.models import PreventiveTemplate, Ticket
from maintdesk.persistence.db import SessionLocal
from maintdesk.persistence.repos import templates as template_repo
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import EntitlementState, load_entitlement_state
from maintdesk.services.plan_catalog import FEATURE_PREVENTIVES
from maintdesk.services.quota import KIND_PREVENTIVES, get_quota_enforcer, recurring_generation_granted
from maintdesk.services.scheduling.calculator import SCHEDULE_DATE, ScheduleSpec, next_occurrence


logger = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_ALREADY_GENERATED = "already_generated"
OUTCOME_NOT_YET_DUE = "not_yet_due"
OUTCOME_NO_ENTITLEMENT = "no_entitlement"
OUTCOME_PAUSED = "paused"
OUTCOME_ORG_INACTIVE = "organization_inactive"
OUTCOME_INACTIVE_TEMPLATE = "inactive_template"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_NO_NEXT_RUN = "no_next_run"
OUTCOME_QUOTA_EXCEEDED = "quota_exceeded"
OUTCOME_ENTITLEMENT_INACTIVE = "entitlement_inactive"
OUTCOME_FEATURE_NOT_ENABLED = "feature_not_enabled"
OUTCOME_FAILED = "failed"

_DENIAL_OUTCOMES = {
    QuotaExceeded: OUTCOME_QUOTA_EXCEEDED,
    EntitlementInactive: OUTCOME_ENTITLEMENT_INACTIVE,
    FeatureNotEnabled: OUTCOME_FEATURE_NOT_ENABLED,
}

_TICKET_NAMESPACE = uuid5(NAMESPACE_URL, "maintdesk:preventive-occurrence")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def occurrence_key(occurrence: datetime) -> str:
    return occurrence.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def ticket_id_for(template_id: str, occurrence: datetime) -> str:
    # Pure function of (template, occurrence): retries and overlapping sweeps collide on the same key.
    return "pm_" + uuid5(_TICKET_NAMESPACE, f"{template_id}:{occurrence_key(occurrence)}").hex


@dataclass(frozen=True)
class TemplateRunResult:
    template_id: str
    outcome: str
    org_id: str | None = None
    ticket_id: str | None = None
    scheduled_for: datetime | None = None
    next_run_at: datetime | None = None
    error_code: str | None = None


@dataclass
class GenerationSummary:
    # Aggregate counters returned by the worker cycle and the root job endpoint.
    scanned: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def add(self, result: TemplateRunResult) -> None:
        self.scanned += 1
        self.outcomes[result.outcome] = self.outcomes.get(result.outcome, 0) + 1

    @property
    def created(self) -> int:
        return self.outcomes.get(OUTCOME_CREATED, 0)

    @property
    def failed(self) -> int:
        return self.outcomes.get(OUTCOME_FAILED, 0)

    def as_dict(self) -> dict[str, Any]:
        return {"scanned": self.scanned, "created": self.created, "failed": self.failed, "outcomes": dict(self.outcomes)}


def template_snapshot(template: PreventiveTemplate) -> dict[str, Any]:
    # Generation-time copy so the ticket stays stable when the template is edited later.
    return {
        "name": template.name,
        "description": template.description,
        "priority": template.priority,
        "site_id": template.site_id,
        "department_id": template.department_id,
        "asset_id": template.asset_id,
        "checklist": list(template.checklist_json or []),
        "schedule": {
            "type": template.schedule_type,
            "timezone": template.schedule_timezone,
            "time_of_day": template.schedule_time_of_day,
            "days_of_week": template.schedule_days_of_week,
            "day_of_month": template.schedule_day_of_month,
            "date": template.schedule_date.isoformat() if template.schedule_date else None,
        },
        "template_updated_at": template.updated_at.isoformat() if template.updated_at else None,
    }


def _checklist_item(item: Any) -> dict[str, Any]:
    if isinstance(item, dict):
        return {**item, "done": False}
    return {"text": str(item), "done": False}


def build_ticket(
    template: PreventiveTemplate,
    occurrence: datetime,
    *,
    source: str,
    created_by: str | None,
    now: datetime,
) -> Ticket:
    return Ticket(
        id=ticket_id_for(template.id, occurrence),
        org_id=template.org_id,
        type="preventive",
        title=template.name,
        description=template.description,
        status="new",
        priority=template.priority,
        site_id=template.site_id,
        department_id=template.department_id,
        asset_id=template.asset_id,
        assigned_to=None,
        template_id=template.id,
        scheduled_for=occurrence,
        template_snapshot_json=template_snapshot(template),
        checklist_json=[_checklist_item(item) for item in (template.checklist_json or [])],
        source=source,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )


def _gate_reason(state: EntitlementState, now: datetime) -> str | None:
    organization = state.organization
    if organization.status != "active":
        return OUTCOME_ORG_INACTIVE
    if organization.preventives_paused:
        return OUTCOME_PAUSED
    effective = state.resolve(feature=FEATURE_PREVENTIVES, now=now)
    if not recurring_generation_granted(effective, is_demo=organization.type == "demo", now=now):
        return OUTCOME_NO_ENTITLEMENT
    return None


def _template_runnable(template: PreventiveTemplate) -> bool:
    # Re-checked under lock: the template may have been edited since the sweep listed it.
    return (
        template.status == "active"
        and bool(template.automatic)
        and bool(template.site_id)
        and bool(template.department_id)
    )


async def _generate_locked(
    session: AsyncSession, template_id: str, org_id: str, *, now: datetime
) -> TemplateRunResult:
    # Organization row first, then the template, the same order every entitlement writer takes.
    try:
        state = await load_entitlement_state(session, org_id, for_update=True)
    except EntitlementNotFound:
        return TemplateRunResult(template_id, OUTCOME_NO_ENTITLEMENT, org_id=org_id)
    template = await template_repo.get_template(session, template_id, for_update=True)
    if template is None:
        return TemplateRunResult(template_id, OUTCOME_INACTIVE_TEMPLATE, org_id=org_id)

    gate = _gate_reason(state, now)
    if gate is not None:
        return TemplateRunResult(template_id, gate, org_id=template.org_id)
    if not _template_runnable(template):
        return TemplateRunResult(template_id, OUTCOME_INACTIVE_TEMPLATE, org_id=template.org_id)

    spec = ScheduleSpec.from_template(template)
    if spec.type == SCHEDULE_DATE and spec.last_run_at is not None:
        return TemplateRunResult(template_id, OUTCOME_EXHAUSTED, org_id=template.org_id)

    # A stored next_run_at is authoritative until consumed.
    next_run = spec.next_run_at or next_occurrence(spec, now)
    if next_run is None:
        template.next_run_at = None
        return TemplateRunResult(template_id, OUTCOME_NO_NEXT_RUN, org_id=template.org_id)
    if next_run > now:
        template.next_run_at = next_run
        return TemplateRunResult(template_id, OUTCOME_NOT_YET_DUE, org_id=template.org_id, next_run_at=next_run)

    ticket_id = ticket_id_for(template.id, next_run)
    outcome = OUTCOME_ALREADY_GENERATED
    if await session.get(Ticket, ticket_id) is None:
        # Raises on denial; the caller rolls back and the schedule stays put for the next tick.
        get_quota_enforcer().consume(state, KIND_PREVENTIVES, now=now)
        session.add(build_ticket(template, next_run, source="recurring", created_by="system", now=now))
        outcome = OUTCOME_CREATED

    # Step one minute past the consumed occurrence so the calculator cannot return it again.
    following = next_occurrence(
        spec.with_progress(next_run_at=None, last_run_at=next_run),
        next_run + timedelta(minutes=1),
    )
    template.last_run_at = next_run
    template.next_run_at = following
    if outcome == OUTCOME_CREATED:
        await record_event(
            session=session,
            org_id=template.org_id,
            actor_type="system",
            actor_id="recurring_generator",
            event_type="preventive.ticket.generated",
            outcome="success",
            resource_type="ticket",
            resource_id=ticket_id,
            metadata={"template_id": template.id, "scheduled_for": next_run},
        )
    return TemplateRunResult(
        template_id,
        outcome,
        org_id=template.org_id,
        ticket_id=ticket_id,
        scheduled_for=next_run,
        next_run_at=following,
    )


async def generate_for_template(
    session: AsyncSession, template_id: str, *, now: datetime | None = None
) -> TemplateRunResult:
    """Evaluate one template and create at most one ticket for its due occurrence.

    Every read and write happens in one transaction holding the template and
    organization locks, so reruns for the same occurrence are no-ops.
    """
    now = now or _utc_now()
    org_id: str | None = None
    try:
        async with session.begin():
            template = await template_repo.get_template(session, template_id)
            if template is None:
                return TemplateRunResult(template_id, OUTCOME_INACTIVE_TEMPLATE)
            org_id = template.org_id
            result = await _generate_locked(session, template_id, org_id, now=now)
    except (QuotaExceeded, EntitlementInactive, FeatureNotEnabled) as exc:
        logger.info(
            "recurring_generation_denied template_id=%s org_id=%s code=%s",
            template_id,
            org_id,
            exc.code,
        )
        await record_event(
            org_id=org_id,
            actor_type="system",
            actor_id="recurring_generator",
            event_type="preventive.ticket.denied",
            outcome="failure",
            resource_type="preventive_template",
            resource_id=template_id,
            metadata=exc.details,
            error_code=exc.code,
        )
        return TemplateRunResult(template_id, _DENIAL_OUTCOMES[type(exc)], org_id=org_id, error_code=exc.code)
    except IntegrityError:
        # Another sweep inserted the same occurrence first; its commit also advanced the schedule.
        logger.info("recurring_generation_race template_id=%s", template_id)
        return TemplateRunResult(template_id, OUTCOME_ALREADY_GENERATED)
    except DBAPIError as exc:
        raise TransientStoreError(f"Generation failed for template {template_id}") from exc

    if result.outcome == OUTCOME_CREATED:
        logger.info(
            "recurring_ticket_created template_id=%s ticket_id=%s scheduled_for=%s",
            template_id,
            result.ticket_id,
            result.scheduled_for,
        )
    return result


async def run_recurring_generation(
    *,
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] = SessionLocal,
) -> GenerationSummary:
    # One sweep tick over active automatic templates; each template is isolated in its own session.
    now = now or _utc_now()
    page_size = max(1, int(get_settings().template_page_size))
    summary = GenerationSummary()
    cursor: str | None = None
    while True:
        async with session_factory() as session:
            template_ids = await template_repo.list_automatic_template_ids(
                session, after_id=cursor, limit=page_size
            )
        if not template_ids:
            break
        for template_id in template_ids:
            try:
                async with session_factory() as session:
                    result = await generate_for_template(session, template_id, now=now)
            except Exception as exc:  # noqa: BLE001 - one template must not abort the sweep
                logger.exception("recurring_generation_failed template_id=%s", template_id, exc_info=exc)
                result = TemplateRunResult(template_id, OUTCOME_FAILED, error_code=getattr(exc, "code", None))
            summary.add(result)
        cursor = template_ids[-1]
        if len(template_ids) < page_size:
            break
    logger.info(
        "recurring_generation_cycle scanned=%s created=%s failed=%s",
        summary.scanned,
        summary.created,
        summary.failed,
    )
    return summary


async def generate_now(
    session: AsyncSession,
    *,
    org_id: str,
    template_id: str,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> TemplateRunResult:
    """Create one ticket for the current minute outside the schedule.

    Uses the same gating and deterministic identity as the sweep and never
    touches next_run_at or last_run_at.
    """
    now = now or _utc_now()
    occurrence = now.astimezone(timezone.utc).replace(second=0, microsecond=0)
    try:
        async with session.begin():
            state = await load_entitlement_state(session, org_id, for_update=True)
            template = await template_repo.get_template_for_org(session, org_id, template_id, for_update=True)
            if template is None:
                raise NotFoundError("preventive_template", template_id)
            if template.status == "archived":
                raise ValidationError("Archived templates cannot generate tickets", field="status")
            if not template.site_id or not template.department_id:
                raise ValidationError("Template needs a site and a department to generate tickets", field="site_id")
            ticket_id = ticket_id_for(template.id, occurrence)
            if await session.get(Ticket, ticket_id) is not None:
                return TemplateRunResult(
                    template_id, OUTCOME_ALREADY_GENERATED, org_id=org_id, ticket_id=ticket_id, scheduled_for=occurrence
                )
            get_quota_enforcer().consume(state, KIND_PREVENTIVES, now=now)
            session.add(build_ticket(template, occurrence, source="manual", created_by=actor_id, now=now))
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="user",
                actor_id=actor_id,
                event_type="preventive.ticket.generated_now",
                outcome="success",
                resource_type="ticket",
                resource_id=ticket_id,
                metadata={"template_id": template.id, "scheduled_for": occurrence},
            )
    except IntegrityError:
        return TemplateRunResult(template_id, OUTCOME_ALREADY_GENERATED, org_id=org_id, scheduled_for=occurrence)
    except DBAPIError as exc:
        raise TransientStoreError("Ticket could not be generated") from exc
    return TemplateRunResult(
        template_id, OUTCOME_CREATED, org_id=org_id, ticket_id=ticket_id, scheduled_for=occurrence
    )
