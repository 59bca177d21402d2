from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.core.errors import (
    EntitlementInactive,
    FeatureNotEnabled,
    NotFoundError,
    QuotaExceeded,
    TransientStoreError,
    ValidationError,
)
from maintdesk.domain.models import PreventiveTemplate, Ticket
from maintdesk.persistence.repos import templates as template_repo
from maintdesk.persistence.repos import tickets as ticket_repo
from maintdesk.services.audit import record_event
from maintdesk.services.entitlements import EntitlementState, load_entitlement_state
from maintdesk.services.quota import KIND_PREVENTIVES, get_quota_enforcer
from maintdesk.services.resources import ensure_reference, new_id
from maintdesk.services.scheduling.calculator import (
    SCHEDULE_DATE,
    SCHEDULE_MONTHLY,
    SCHEDULE_TYPES,
    SCHEDULE_WEEKLY,
    ScheduleSpec,
    is_valid_time_of_day,
    next_occurrence,
)


logger = logging.getLogger(__name__)

TEMPLATE_ACTIVE = "active"
TEMPLATE_PAUSED = "paused"
TEMPLATE_ARCHIVED = "archived"
TEMPLATE_STATUSES = (TEMPLATE_ACTIVE, TEMPLATE_PAUSED, TEMPLATE_ARCHIVED)
PRIORITIES = ("low", "medium", "high", "critical")

_SCHEDULE_FIELDS = {"type", "timezone", "time_of_day", "days_of_week", "day_of_month", "date"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_schedule(spec: ScheduleSpec) -> ScheduleSpec:
    """Reject malformed schedules at write time.

    The calculator never raises, so anything it would silently degrade is
    caught here instead.
    """
    if spec.type not in SCHEDULE_TYPES:
        raise ValidationError(f"Unsupported schedule type: {spec.type}", field="schedule.type")
    if spec.time_of_day is not None and not is_valid_time_of_day(spec.time_of_day):
        raise ValidationError("time_of_day must be HH:MM", field="schedule.time_of_day")
    if spec.timezone:
        try:
            ZoneInfo(spec.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown timezone: {spec.timezone}", field="schedule.timezone") from exc
    if spec.days_of_week is not None:
        if spec.type != SCHEDULE_WEEKLY:
            raise ValidationError("days_of_week applies to weekly schedules", field="schedule.days_of_week")
        if not spec.days_of_week or any(day < 1 or day > 7 for day in spec.days_of_week):
            raise ValidationError("days_of_week must be ISO weekdays 1..7", field="schedule.days_of_week")
    if spec.day_of_month is not None:
        if spec.type != SCHEDULE_MONTHLY:
            raise ValidationError("day_of_month applies to monthly schedules", field="schedule.day_of_month")
        if spec.day_of_month < 1 or spec.day_of_month > 31:
            raise ValidationError("day_of_month must be between 1 and 31", field="schedule.day_of_month")
    if spec.type == SCHEDULE_DATE and spec.date is None:
        raise ValidationError("date is required for date schedules", field="schedule.date")
    if spec.days_of_week is not None:
        spec = replace(spec, days_of_week=tuple(sorted(set(spec.days_of_week))))
    if spec.date is not None:
        spec = replace(spec, date=_as_utc(spec.date))
    return spec


@dataclass
class TemplateDraft:
    name: str
    schedule: ScheduleSpec
    description: str | None = None
    status: str = TEMPLATE_ACTIVE
    automatic: bool = False
    priority: str = "medium"
    site_id: str | None = None
    department_id: str | None = None
    asset_id: str | None = None
    checklist: list[Any] = field(default_factory=list)


def validate_draft(draft: TemplateDraft) -> TemplateDraft:
    name = (draft.name or "").strip()
    if not name:
        raise ValidationError("Name is required", field="name")
    if draft.status not in TEMPLATE_STATUSES:
        raise ValidationError(f"Unsupported template status: {draft.status}", field="status")
    if draft.priority not in PRIORITIES:
        raise ValidationError(f"Unsupported priority: {draft.priority}", field="priority")
    if draft.automatic and draft.status == TEMPLATE_ACTIVE:
        if not draft.site_id:
            raise ValidationError("Automatic templates need a site", field="site_id")
        if not draft.department_id:
            raise ValidationError("Automatic templates need a department", field="department_id")
    return replace(draft, name=name, schedule=validate_schedule(draft.schedule))


def _apply_draft(template: PreventiveTemplate, draft: TemplateDraft) -> None:
    template.name = draft.name
    template.description = draft.description
    template.status = draft.status
    template.automatic = draft.automatic
    template.priority = draft.priority
    template.site_id = draft.site_id
    template.department_id = draft.department_id
    template.asset_id = draft.asset_id
    template.checklist_json = list(draft.checklist or [])
    template.schedule_type = draft.schedule.type
    template.schedule_timezone = draft.schedule.timezone
    template.schedule_time_of_day = draft.schedule.time_of_day
    template.schedule_days_of_week = list(draft.schedule.days_of_week) if draft.schedule.days_of_week else None
    template.schedule_day_of_month = draft.schedule.day_of_month
    template.schedule_date = draft.schedule.date


def _draft_of(template: PreventiveTemplate) -> TemplateDraft:
    return TemplateDraft(
        name=template.name,
        schedule=ScheduleSpec.from_template(template),
        description=template.description,
        status=template.status,
        automatic=template.automatic,
        priority=template.priority,
        site_id=template.site_id,
        department_id=template.department_id,
        asset_id=template.asset_id,
        checklist=list(template.checklist_json or []),
    )


def _schedule_key(spec: ScheduleSpec) -> tuple[Any, ...]:
    return (spec.type, spec.timezone, spec.time_of_day, spec.days_of_week, spec.day_of_month, spec.date)


async def _check_references(session: AsyncSession, org_id: str, draft: TemplateDraft) -> None:
    await ensure_reference(session, org_id, "site", draft.site_id)
    await ensure_reference(session, org_id, "department", draft.department_id)
    await ensure_reference(session, org_id, "asset", draft.asset_id)


async def _audit_denial(
    exc: QuotaExceeded | EntitlementInactive | FeatureNotEnabled,
    *,
    org_id: str,
    actor_id: str | None,
    request_id: str | None,
    template_id: str | None = None,
) -> None:
    logger.info("preventive_template_denied org_id=%s code=%s", org_id, exc.code)
    await record_event(
        org_id=org_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="preventive_template.quota_denied",
        outcome="failure",
        resource_type="preventive_template",
        resource_id=template_id,
        request_id=request_id,
        metadata=exc.details,
        error_code=exc.code,
    )


async def create_template(
    session: AsyncSession,
    *,
    org_id: str,
    draft: TemplateDraft,
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> PreventiveTemplate:
    # Only active templates occupy a preventive slot.
    now = now or _utc_now()
    draft = validate_draft(draft)
    try:
        async with session.begin():
            state = await load_entitlement_state(session, org_id, for_update=True)
            await _check_references(session, org_id, draft)
            if draft.status == TEMPLATE_ACTIVE:
                get_quota_enforcer().consume(state, KIND_PREVENTIVES, now=now)
            template = PreventiveTemplate(id=new_id("tpl"), org_id=org_id, created_by=actor_id, created_at=now)
            _apply_draft(template, draft)
            template.next_run_at = next_occurrence(draft.schedule, now) if draft.automatic else None
            template.updated_at = now
            session.add(template)
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="user",
                actor_id=actor_id,
                event_type="preventive_template.created",
                outcome="success",
                resource_type="preventive_template",
                resource_id=template.id,
                request_id=request_id,
                metadata={"status": draft.status, "automatic": draft.automatic, "schedule_type": draft.schedule.type},
            )
    except (QuotaExceeded, EntitlementInactive, FeatureNotEnabled) as exc:
        await _audit_denial(exc, org_id=org_id, actor_id=actor_id, request_id=request_id)
        raise
    except DBAPIError as exc:
        raise TransientStoreError("Template could not be created") from exc
    logger.info("preventive_template_created org_id=%s template_id=%s", org_id, template.id)
    return template


def _adjust_slots(state: EntitlementState, before: str, after: str, now: datetime) -> None:
    enforcer = get_quota_enforcer()
    if before != TEMPLATE_ACTIVE and after == TEMPLATE_ACTIVE:
        enforcer.consume(state, KIND_PREVENTIVES, now=now)
    elif before == TEMPLATE_ACTIVE and after != TEMPLATE_ACTIVE:
        enforcer.release(state, KIND_PREVENTIVES, now=now)


async def update_template(
    session: AsyncSession,
    *,
    org_id: str,
    template_id: str,
    changes: dict[str, Any],
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> PreventiveTemplate:
    """Apply a partial edit.

    Status transitions into or out of ``active`` consume or release a slot.
    A schedule change recomputes ``next_run_at`` and restarts the schedule's
    progress; templates that are not automatic carry no ``next_run_at``.
    """
    now = now or _utc_now()
    try:
        async with session.begin():
            state = await load_entitlement_state(session, org_id, for_update=True)
            template = await template_repo.get_template_for_org(session, org_id, template_id, for_update=True)
            if template is None:
                raise NotFoundError("preventive_template", template_id)
            current = _draft_of(template)
            schedule = current.schedule
            if "schedule" in changes and changes["schedule"] is not None:
                schedule_changes = {k: v for k, v in changes["schedule"].items() if k in _SCHEDULE_FIELDS}
                if "days_of_week" in schedule_changes and schedule_changes["days_of_week"] is not None:
                    schedule_changes["days_of_week"] = tuple(schedule_changes["days_of_week"])
                if "type" in schedule_changes and schedule_changes["type"] != schedule.type:
                    # A new recurrence kind starts from a clean definition.
                    schedule = ScheduleSpec(type=schedule_changes["type"])
                schedule = replace(schedule, **schedule_changes)
            simple = {k: v for k, v in changes.items() if k != "schedule" and k in TemplateDraft.__dataclass_fields__}
            draft = validate_draft(replace(current, schedule=schedule, **simple))
            await _check_references(session, org_id, draft)

            previous_status = template.status
            schedule_changed = _schedule_key(draft.schedule) != _schedule_key(current.schedule)
            automatic_changed = draft.automatic != current.automatic
            _adjust_slots(state, previous_status, draft.status, now)
            _apply_draft(template, draft)
            if schedule_changed:
                template.last_run_at = None
            if not draft.automatic:
                template.next_run_at = None
            elif schedule_changed or automatic_changed or template.next_run_at is None:
                template.next_run_at = next_occurrence(
                    ScheduleSpec.from_template(template).with_progress(
                        next_run_at=None, last_run_at=template.last_run_at
                    ),
                    now,
                )
            template.updated_at = now
            await record_event(
                session=session,
                org_id=org_id,
                actor_type="user",
                actor_id=actor_id,
                event_type="preventive_template.updated",
                outcome="success",
                resource_type="preventive_template",
                resource_id=template_id,
                request_id=request_id,
                metadata={
                    "fields": sorted(changes),
                    "status_from": previous_status,
                    "status_to": draft.status,
                },
            )
    except (QuotaExceeded, EntitlementInactive, FeatureNotEnabled) as exc:
        await _audit_denial(exc, org_id=org_id, actor_id=actor_id, request_id=request_id, template_id=template_id)
        raise
    except DBAPIError as exc:
        raise TransientStoreError("Template could not be updated") from exc
    return template


async def duplicate_template(
    session: AsyncSession,
    *,
    org_id: str,
    template_id: str,
    actor_id: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> PreventiveTemplate:
    # Copies start paused without schedule progress, so no slot is consumed.
    now = now or _utc_now()
    async with session.begin():
        source = await template_repo.get_template_for_org(session, org_id, template_id)
        if source is None:
            raise NotFoundError("preventive_template", template_id)
        draft = replace(_draft_of(source), name=f"{source.name} (copy)", status=TEMPLATE_PAUSED)
        copy = PreventiveTemplate(id=new_id("tpl"), org_id=org_id, created_by=actor_id, created_at=now)
        _apply_draft(copy, draft)
        copy.next_run_at = None
        copy.last_run_at = None
        copy.updated_at = now
        session.add(copy)
        await record_event(
            session=session,
            org_id=org_id,
            actor_type="user",
            actor_id=actor_id,
            event_type="preventive_template.duplicated",
            outcome="success",
            resource_type="preventive_template",
            resource_id=copy.id,
            request_id=request_id,
            metadata={"source_template_id": template_id},
        )
    return copy


async def get_template(session: AsyncSession, *, org_id: str, template_id: str) -> PreventiveTemplate:
    template = await template_repo.get_template_for_org(session, org_id, template_id)
    if template is None:
        raise NotFoundError("preventive_template", template_id)
    return template


async def list_templates(session: AsyncSession, *, org_id: str) -> list[PreventiveTemplate]:
    return await template_repo.list_templates_by_org(session, org_id)


async def list_template_tickets(session: AsyncSession, *, org_id: str, template_id: str) -> list[Ticket]:
    await get_template(session, org_id=org_id, template_id=template_id)
    return await ticket_repo.list_tickets_for_template(session, org_id, template_id)
