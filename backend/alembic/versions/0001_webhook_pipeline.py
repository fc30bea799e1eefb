"""billing webhook pipeline, tenants and subscription mirror

Revision ID: 0001_webhook_pipeline
Revises:
Create Date: 2026-10-17 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_webhook_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("industry", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("company_address", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("company_phone", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("company_email", sa.String(length=255), nullable=True),
        sa.Column("logo_url", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("subscription_tier", sa.String(length=32), nullable=False, server_default="starter"),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("paddle_customer_id", sa.String(length=128), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_users", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_projects", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_month_expenses", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "company_users",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="viewer"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("company_id", "user_id"),
    )
    op.create_index("ix_company_users_email", "company_users", ["email"], unique=False)

    op.create_table(
        "projects",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("project_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_system_project", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("budget", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("spent_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("company_id", "project_id"),
    )

    op.create_table(
        "contractors",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("contractor_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("specialty", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_system_contractor", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("company_id", "contractor_id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("paddle_customer_id", sa.String(length=128), nullable=True),
        sa.Column("current_plan", sa.String(length=32), nullable=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_change_id", sa.String(length=128), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("company_id"),
    )
    op.create_index("ix_subscriptions_subscription_id", "subscriptions", ["subscription_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.String(length=32), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payment_method", sa.String(length=128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("payment_id"),
    )
    op.create_index("ix_payments_company_id", "payments", ["company_id"], unique=False)

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_webhook_events_tenant_id", "webhook_events", ["tenant_id"], unique=False)
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"], unique=False)
    op.create_index("ix_webhook_events_expires_at", "webhook_events", ["expires_at"], unique=False)

    op.create_table(
        "webhook_dead_letters",
        sa.Column("dlq_entry_id", sa.String(length=255), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=False),
        sa.Column("error_category", sa.String(length=64), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("processing_history", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="exhausted"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("dlq_entry_id"),
    )
    op.create_index("ix_webhook_dead_letters_event_id", "webhook_dead_letters", ["event_id"], unique=False)
    op.create_index("ix_webhook_dead_letters_company_id", "webhook_dead_letters", ["company_id"], unique=False)
    op.create_index(
        "ix_webhook_dead_letters_status_dead_lettered_at",
        "webhook_dead_letters",
        ["status", "dead_lettered_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_company_id", "audit_logs", ["company_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_company_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_webhook_dead_letters_status_dead_lettered_at", table_name="webhook_dead_letters")
    op.drop_index("ix_webhook_dead_letters_company_id", table_name="webhook_dead_letters")
    op.drop_index("ix_webhook_dead_letters_event_id", table_name="webhook_dead_letters")
    op.drop_table("webhook_dead_letters")

    op.drop_index("ix_webhook_events_expires_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_tenant_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_payments_company_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_subscriptions_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_table("contractors")
    op.drop_table("projects")

    op.drop_index("ix_company_users_email", table_name="company_users")
    op.drop_table("company_users")

    op.drop_table("companies")
