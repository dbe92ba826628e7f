"""create automation tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_pipeline_organization_id", "automation_pipeline", ["organization_id"], unique=False)
    op.create_index(
        "ix_automation_pipeline_template_key",
        "automation_pipeline",
        ["organization_id", "template_key"],
        unique=False,
    )

    op.create_table(
        "automation_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("intent", sa.Text(), nullable=True),
        sa.Column("required_fields", sa.JSON(), nullable=False),
        sa.Column("sub_statuses", sa.JSON(), nullable=False),
        sa.Column("failure_signals", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("probability >= 0 AND probability <= 100", name="ck_automation_stage_probability"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["automation_pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_id", "stage_order", name="uq_automation_stage_pipeline_order"),
        sa.UniqueConstraint("pipeline_id", "name", name="uq_automation_stage_pipeline_name"),
    )
    op.create_index("ix_automation_stage_pipeline_id", "automation_stage", ["pipeline_id"], unique=False)

    op.create_table(
        "automation_stage_automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("actions_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["automation_stage.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_stage_automation_stage_id",
        "automation_stage_automation",
        ["stage_id"],
        unique=False,
    )

    op.create_table(
        "automation_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("current_stage_id", sa.Uuid(), nullable=False),
        sa.Column("entered_stage_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("residency_seq", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("field_values", sa.JSON(), nullable=False),
        sa.Column("automation_snapshot", sa.JSON(), nullable=False),
        sa.Column("has_duration_automations", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("partition_key", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["automation_pipeline.id"]),
        sa.ForeignKeyConstraint(["current_stage_id"], ["automation_stage.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_record_scan",
        "automation_record",
        ["organization_id", "has_duration_automations", "archived_at"],
        unique=False,
    )
    op.create_index("ix_automation_record_pipeline_id", "automation_record", ["pipeline_id"], unique=False)
    op.create_index("ix_automation_record_partition_key", "automation_record", ["partition_key"], unique=False)

    op.create_table(
        "automation_firing_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("residency_seq", sa.Integer(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("epoch", sa.Integer(), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("epoch >= 1", name="ck_automation_firing_log_epoch"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "record_id",
            "residency_seq",
            "automation_id",
            "epoch",
            name="uq_automation_firing_log_residency_epoch",
        ),
    )
    op.create_index("ix_automation_firing_log_record_id", "automation_firing_log", ["record_id"], unique=False)

    op.create_table(
        "automation_action_request",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("residency_seq", sa.Integer(), nullable=False),
        sa.Column("epoch", sa.Integer(), nullable=False),
        sa.Column("action_index", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )
    op.create_index(
        "ix_automation_action_request_status_run_after",
        "automation_action_request",
        ["status", "run_after"],
        unique=False,
    )
    op.create_index(
        "ix_automation_action_request_record_id",
        "automation_action_request",
        ["record_id"],
        unique=False,
    )

    op.create_table(
        "automation_dead_letter",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requeued_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )
    op.create_index(
        "ix_automation_dead_letter_organization_id",
        "automation_dead_letter",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "automation_scheduler_lease",
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("holder", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "automation_dispatched_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assignee_user_id", sa.String(length=64), nullable=True),
        sa.Column("recurring", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )
    op.create_index(
        "ix_automation_dispatched_task_record_id",
        "automation_dispatched_task",
        ["record_id"],
        unique=False,
    )

    op.create_table(
        "automation_dispatched_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("recipient_user_ids", sa.JSON(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )

    op.create_table(
        "automation_dispatched_email",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.Uuid(), nullable=False),
        sa.Column("to_address", sa.String(length=320), nullable=False),
        sa.Column("template", sa.String(length=128), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )


def downgrade() -> None:
    op.drop_table("automation_dispatched_email")
    op.drop_table("automation_dispatched_notification")
    op.drop_index("ix_automation_dispatched_task_record_id", table_name="automation_dispatched_task")
    op.drop_table("automation_dispatched_task")
    op.drop_table("automation_scheduler_lease")
    op.drop_index("ix_automation_dead_letter_organization_id", table_name="automation_dead_letter")
    op.drop_table("automation_dead_letter")
    op.drop_index("ix_automation_action_request_record_id", table_name="automation_action_request")
    op.drop_index("ix_automation_action_request_status_run_after", table_name="automation_action_request")
    op.drop_table("automation_action_request")
    op.drop_index("ix_automation_firing_log_record_id", table_name="automation_firing_log")
    op.drop_table("automation_firing_log")
    op.drop_index("ix_automation_record_partition_key", table_name="automation_record")
    op.drop_index("ix_automation_record_pipeline_id", table_name="automation_record")
    op.drop_index("ix_automation_record_scan", table_name="automation_record")
    op.drop_table("automation_record")
    op.drop_index("ix_automation_stage_automation_stage_id", table_name="automation_stage_automation")
    op.drop_table("automation_stage_automation")
    op.drop_index("ix_automation_stage_pipeline_id", table_name="automation_stage")
    op.drop_table("automation_stage")
    op.drop_index("ix_automation_pipeline_template_key", table_name="automation_pipeline")
    op.drop_index("ix_automation_pipeline_organization_id", table_name="automation_pipeline")
    op.drop_table("automation_pipeline")
