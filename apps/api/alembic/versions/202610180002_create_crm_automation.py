"""create crm automation rules, execution log and webhook deliveries

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(length=128), nullable=False),
        sa.Column("conditions_json", sa.JSON(), nullable=True),
        sa.Column("actions_json", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_user_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_rule_tenant_trigger",
        "crm_automation_rule",
        ["tenant_id", "trigger_type"],
        unique=False,
    )
    op.create_index("ix_crm_automation_rule_deleted_at", "crm_automation_rule", ["deleted_at"], unique=False)

    op.create_table(
        "crm_automation_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("trigger_type", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("action_results_json", sa.JSON(), nullable=False),
        sa.Column("trigger_payload_json", sa.JSON(), nullable=False),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_log_automation_created",
        "crm_automation_log",
        ["automation_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_crm_automation_log_tenant", "crm_automation_log", ["tenant_id"], unique=False)

    op.create_table(
        "crm_webhook_delivery",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=True),
        sa.Column("automation_id", sa.Uuid(), nullable=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_webhook_delivery_automation", "crm_webhook_delivery", ["automation_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_webhook_delivery_automation", table_name="crm_webhook_delivery")
    op.drop_table("crm_webhook_delivery")
    op.drop_index("ix_crm_automation_log_tenant", table_name="crm_automation_log")
    op.drop_index("ix_crm_automation_log_automation_created", table_name="crm_automation_log")
    op.drop_table("crm_automation_log")
    op.drop_index("ix_crm_automation_rule_deleted_at", table_name="crm_automation_rule")
    op.drop_index("ix_crm_automation_rule_tenant_trigger", table_name="crm_automation_rule")
    op.drop_table("crm_automation_rule")
