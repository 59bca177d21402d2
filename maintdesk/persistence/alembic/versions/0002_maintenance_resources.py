"""maintenance resources, preventive templates and tickets

Revision ID: 0002_maintenance_resources
Revises: 0001_init
Create Date: 2026-10-06 14:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_maintenance_resources"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sites",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sites_org_id", "sites", ["org_id"])

    op.create_table(
        "departments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_departments_org_id", "departments", ["org_id"])

    op.create_table(
        "assets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_assets_org_id", "assets", ["org_id"])

    op.create_table(
        "user_invites",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("invited_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("org_id", "email", name="uq_user_invites_org_email"),
    )
    op.create_index("ix_user_invites_org_id", "user_invites", ["org_id"])

    op.create_table(
        "preventive_templates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("department_id", sa.String(), nullable=True),
        sa.Column("asset_id", sa.String(), nullable=True),
        sa.Column("checklist_json", postgresql.JSONB(), nullable=True),
        sa.Column("schedule_type", sa.String(), nullable=False),
        sa.Column("schedule_timezone", sa.String(), nullable=True),
        sa.Column("schedule_time_of_day", sa.String(), nullable=True),
        sa.Column("schedule_days_of_week", postgresql.JSONB(), nullable=True),
        sa.Column("schedule_day_of_month", sa.Integer(), nullable=True),
        sa.Column("schedule_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_preventive_templates_org_id", "preventive_templates", ["org_id"])
    # The recurring sweep pages active automatic templates by id.
    op.create_index("ix_preventive_templates_sweep", "preventive_templates", ["status", "automatic", "id"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="preventive"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="new"),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("department_id", sa.String(), nullable=True),
        sa.Column("asset_id", sa.String(), nullable=True),
        sa.Column("assigned_to", sa.String(), nullable=True),
        sa.Column("template_id", sa.String(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("template_snapshot_json", postgresql.JSONB(), nullable=True),
        sa.Column("checklist_json", postgresql.JSONB(), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("preventive_paused_by_entitlement", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status_before_pause", sa.String(), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # One ticket per template occurrence, whatever number of sweeps race on it.
        sa.UniqueConstraint("template_id", "scheduled_for", name="uq_tickets_template_occurrence"),
    )
    op.create_index("ix_tickets_org_id", "tickets", ["org_id"])
    op.create_index("ix_tickets_org_template", "tickets", ["org_id", "template_id", "id"])


def downgrade() -> None:
    op.drop_index("ix_tickets_org_template", table_name="tickets")
    op.drop_index("ix_tickets_org_id", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_preventive_templates_sweep", table_name="preventive_templates")
    op.drop_index("ix_preventive_templates_org_id", table_name="preventive_templates")
    op.drop_table("preventive_templates")
    op.drop_index("ix_user_invites_org_id", table_name="user_invites")
    op.drop_table("user_invites")
    op.drop_index("ix_assets_org_id", table_name="assets")
    op.drop_table("assets")
    op.drop_index("ix_departments_org_id", table_name="departments")
    op.drop_table("departments")
    op.drop_index("ix_sites_org_id", table_name="sites")
    op.drop_table("sites")
