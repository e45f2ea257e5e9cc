"""Create dunning outreach tables

Revision ID: 20261001_dunning_schema
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261001_dunning_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("stats", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_campaigns_org_id", "campaigns", ["org_id"])

    op.create_table(
        "campaign_invoices",
        sa.Column("campaign_id", sa.String(36), primary_key=True),
        sa.Column("invoice_id", sa.String(36), primary_key=True),
    )
    op.create_index("ix_campaign_invoices_invoice_id", "campaign_invoices", ["invoice_id"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(320)),
        sa.Column("payment_behavior", sa.String(16), nullable=False),
        sa.Column("avg_days_to_pay", sa.Integer()),
        sa.Column("total_invoices", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_paid_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "total_outstanding_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("stop_contact", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stop_contact_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_customers_org_id", "customers", ["org_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(36), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("amount_due_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("risk_level", sa.String(16)),
        sa.Column("payment_url", sa.Text()),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_invoices_org_id", "invoices", ["org_id"])
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])

    op.create_table(
        "email_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(36)),
        sa.Column("invoice_id", sa.String(36)),
        sa.Column("customer_id", sa.String(36), nullable=False),
        sa.Column("direction", sa.String(8), nullable=False, server_default="outbound"),
        sa.Column("to_email", sa.String(320)),
        sa.Column("subject", sa.Text()),
        sa.Column("body", sa.Text()),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("message_id", sa.String(255)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text()),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_email_logs_invoice_id", "email_logs", ["invoice_id"])
    op.create_index("ix_email_logs_customer_id", "email_logs", ["customer_id"])
    op.create_index("ix_email_logs_message_id", "email_logs", ["message_id"])

    op.create_table(
        "scheduled_tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(36)),
        sa.Column("invoice_id", sa.String(36)),
        sa.Column("customer_id", sa.String(36)),
        sa.Column("task_type", sa.String(32), nullable=False),
        sa.Column("task_data", sa.JSON(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text()),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_scheduled_tasks_status_scheduled_for",
        "scheduled_tasks",
        ["status", "scheduled_for"],
    )
    op.create_index("ix_scheduled_tasks_campaign_id", "scheduled_tasks", ["campaign_id"])


def downgrade() -> None:
    op.drop_index("ix_scheduled_tasks_campaign_id", table_name="scheduled_tasks")
    op.drop_index("ix_scheduled_tasks_status_scheduled_for", table_name="scheduled_tasks")
    op.drop_table("scheduled_tasks")
    op.drop_index("ix_email_logs_message_id", table_name="email_logs")
    op.drop_index("ix_email_logs_customer_id", table_name="email_logs")
    op.drop_index("ix_email_logs_invoice_id", table_name="email_logs")
    op.drop_table("email_logs")
    op.drop_index("ix_invoices_customer_id", table_name="invoices")
    op.drop_index("ix_invoices_org_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_customers_org_id", table_name="customers")
    op.drop_table("customers")
    op.drop_index("ix_campaign_invoices_invoice_id", table_name="campaign_invoices")
    op.drop_table("campaign_invoices")
    op.drop_index("ix_campaigns_org_id", table_name="campaigns")
    op.drop_table("campaigns")
