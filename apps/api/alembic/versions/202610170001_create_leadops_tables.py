"""create lead ops tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "inbound_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_inbound_event_idempotency_key"),
    )
    op.create_index("ix_inbound_event_status_created", "inbound_event", ["status", "created_at"], unique=False)
    op.create_index("ix_inbound_event_source", "inbound_event", ["source"], unique=False)

    op.create_table(
        "lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("funnel", sa.String(length=32), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="triagem"),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=False),
        sa.Column("phone_normalized", sa.String(length=32), nullable=False),
        sa.Column("client_type", sa.String(length=32), nullable=True),
        sa.Column("project_type", sa.String(length=32), nullable=True),
        sa.Column("project_stage", sa.String(length=32), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("estimated_deadline", sa.Text(), nullable=True),
        sa.Column("estimated_ticket", sa.Numeric(14, 2), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("utm_source", sa.Text(), nullable=True),
        sa.Column("utm_medium", sa.Text(), nullable=True),
        sa.Column("utm_campaign", sa.Text(), nullable=True),
        sa.Column("utm_content", sa.Text(), nullable=True),
        sa.Column("crm_person_id", sa.String(length=64), nullable=True),
        sa.Column("crm_deal_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("qualified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone_normalized", name="uq_lead_phone_normalized"),
    )
    op.create_index("ix_lead_stage_created", "lead", ["stage", "created_at"], unique=False)
    op.create_index("ix_lead_funnel", "lead", ["funnel"], unique=False)
    op.create_index("ix_lead_crm_deal_id", "lead", ["crm_deal_id"], unique=False)

    op.create_table(
        "lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["lead.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lead_activity_lead_created", "lead_activity", ["lead_id", "created_at"], unique=False)
    op.create_index("ix_lead_activity_type", "lead_activity", ["activity_type"], unique=False)

    op.create_table(
        "commitment_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("commitment_type", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("breached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["lead.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_commitment_event_lead_type", "commitment_event", ["lead_id", "commitment_type"], unique=False)
    op.create_index(
        "ix_commitment_event_breach_scan",
        "commitment_event",
        ["breached", "completed_at", "deadline_at"],
        unique=False,
    )
    op.create_index(
        "uq_commitment_event_open",
        "commitment_event",
        ["lead_id", "commitment_type"],
        unique=True,
        postgresql_where=sa.text("completed_at IS NULL AND breached = false"),
        sqlite_where=sa.text("completed_at IS NULL AND breached = 0"),
    )

    op.create_table(
        "escalation_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("commitment_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["commitment_id"], ["commitment_event.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("commitment_id", "level", name="uq_escalation_record_commitment_level"),
    )

    op.create_table(
        "follow_up_sequence",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("funnel", sa.String(length=32), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_follow_up_sequence_funnel", "follow_up_sequence", ["funnel"], unique=False)

    op.create_table(
        "follow_up_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("delay_minutes", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False, server_default="whatsapp"),
        sa.Column("template", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["sequence_id"], ["follow_up_sequence.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sequence_id", "step_order", name="uq_follow_up_step_sequence_order"),
    )

    op.create_table(
        "sequence_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["lead_id"], ["lead.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["sequence_id"], ["follow_up_sequence.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sequence_execution_due", "sequence_execution", ["status", "next_run_at"], unique=False)
    op.create_index(
        "uq_sequence_execution_active_lead",
        "sequence_execution",
        ["lead_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_sequence_execution_active_lead", table_name="sequence_execution")
    op.drop_index("ix_sequence_execution_due", table_name="sequence_execution")
    op.drop_table("sequence_execution")
    op.drop_table("follow_up_step")
    op.drop_index("ix_follow_up_sequence_funnel", table_name="follow_up_sequence")
    op.drop_table("follow_up_sequence")
    op.drop_table("escalation_record")
    op.drop_index("uq_commitment_event_open", table_name="commitment_event")
    op.drop_index("ix_commitment_event_breach_scan", table_name="commitment_event")
    op.drop_index("ix_commitment_event_lead_type", table_name="commitment_event")
    op.drop_table("commitment_event")
    op.drop_index("ix_lead_activity_type", table_name="lead_activity")
    op.drop_index("ix_lead_activity_lead_created", table_name="lead_activity")
    op.drop_table("lead_activity")
    op.drop_index("ix_lead_crm_deal_id", table_name="lead")
    op.drop_index("ix_lead_funnel", table_name="lead")
    op.drop_index("ix_lead_stage_created", table_name="lead")
    op.drop_table("lead")
    op.drop_index("ix_inbound_event_source", table_name="inbound_event")
    op.drop_index("ix_inbound_event_status_created", table_name="inbound_event")
    op.drop_table("inbound_event")
