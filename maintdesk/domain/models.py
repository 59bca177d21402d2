from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Always hand back aware UTC datetimes; SQLite drops tzinfo on the way in.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (local SQLite runs).
JSONDoc = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    # Opaque key derived once from the chosen name; never rewritten.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    name_lower: Mapped[str] = mapped_column(String, index=True)
    # Lifecycle status: active, suspended or deleted.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    # Organization type: standard or demo.
    type: Mapped[str] = mapped_column(String, default="standard", nullable=False)
    demo_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    # Set by entitlement sweeps; blocks recurring generation for the whole tenant.
    preventives_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    preventives_paused_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    preventives_paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class OrganizationEntitlement(Base):
    __tablename__ = "organization_entitlements"

    # One row per organization; always mutated under the organization row lock.
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String)
    # trialing, active, past_due or canceled.
    status: Mapped[str] = mapped_column(String)
    # stripe, google_play, apple_app_store or manual.
    provider: Mapped[str] = mapped_column(String)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Explicit overrides layered on top of plan catalog defaults.
    limits_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    features_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    # Usage counters maintained by the transaction that performs the counted creation.
    sites_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assets_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    departments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    users_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_preventives_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attachments_this_month_mb: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class BillingProviderRecord(Base):
    __tablename__ = "billing_provider_records"

    # Per-provider subscription snapshot used for reconciliation and conflict detection.
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    provider: Mapped[str] = mapped_column(String, primary_key=True)
    plan_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    conflict: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    conflict_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider-side subscription reference for support lookups.
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    # Source event time; last-write-wins compares against this value.
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class BillingEventReceipt(Base):
    __tablename__ = "billing_event_receipts"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_billing_event_receipts_event"),
    )

    # Deduplicate provider redeliveries of the same event.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    org_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class PlanCatalogEntry(Base):
    __tablename__ = "plan_catalog"

    # Stored catalog rows shallow-override the built-in plan defaults.
    plan_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    limits_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    features_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class UserInvite(Base):
    __tablename__ = "user_invites"
    __table_args__ = (UniqueConstraint("org_id", "email", name="uq_user_invites_org_email"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    email: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    invited_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class PreventiveTemplate(Base):
    __tablename__ = "preventive_templates"
    __table_args__ = (
        Index("ix_preventive_templates_sweep", "status", "automatic", "id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # active, paused or archived.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    automatic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[str] = mapped_column(String, default="medium", nullable=False)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    department_id: Mapped[str | None] = mapped_column(String, nullable=True)
    asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    checklist_json: Mapped[list[Any] | None] = mapped_column(JSONDoc, nullable=True)
    # Schedule spec; the generator only ever writes next_run_at/last_run_at.
    schedule_type: Mapped[str] = mapped_column(String)
    schedule_timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    schedule_time_of_day: Mapped[str | None] = mapped_column(String, nullable=True)
    schedule_days_of_week: Mapped[list[int] | None] = mapped_column(JSONDoc, nullable=True)
    schedule_day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    schedule_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("template_id", "scheduled_for", name="uq_tickets_template_occurrence"),
        Index("ix_tickets_org_template", "org_id", "template_id", "id"),
    )

    # Deterministic for generated tickets: derived from (template_id, scheduled_for).
    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    type: Mapped[str] = mapped_column(String, default="preventive", nullable=False)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="new", nullable=False)
    priority: Mapped[str] = mapped_column(String, default="medium", nullable=False)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    department_id: Mapped[str | None] = mapped_column(String, nullable=True)
    asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String, nullable=True)
    template_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Generation-time template fields, kept stable even if the template changes later.
    template_snapshot_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    checklist_json: Mapped[list[Any] | None] = mapped_column(JSONDoc, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    preventive_paused_by_entitlement: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status_before_pause: Mapped[str | None] = mapped_column(String, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    # Null for platform-level events (root jobs, unknown-org webhooks).
    org_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
