"""billing tables: accounts, wallet ledger, usage, invoices, webhook events, audit

Revision ID: 001_billing_tables
Revises:
Create Date: 2026-03-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_billing_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "billing_accounts",
        sa.Column("account_id", sa.String(128), primary_key=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("wallet_balance_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("inbound_plan", sa.String(32), nullable=False, server_default="pay_per_use"),
        sa.Column("outbound_plan", sa.String(32), nullable=False, server_default="pay_per_use"),
        sa.Column("inbound_rate_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("outbound_rate_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("external_customer_ref", sa.String(255), nullable=True),
        sa.Column("external_subscription_ref", sa.String(255), nullable=True),
        sa.Column("next_payment_at", sa.DateTime, nullable=True),
        sa.Column("grace_until", sa.DateTime, nullable=True),
        sa.Column("suspended_at", sa.DateTime, nullable=True),
        sa.Column("period_spent_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("period_added_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_billing_accounts_external_customer_ref", "billing_accounts", ["external_customer_ref"])
    op.create_index("ix_billing_accounts_external_subscription_ref", "billing_accounts", ["external_subscription_ref"])

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("transaction_id", sa.String(64), nullable=False, unique=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("amount_minor", sa.Integer, nullable=False),
        sa.Column("balance_before_minor", sa.Integer, nullable=False),
        sa.Column("balance_after_minor", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(512), nullable=False, server_default=""),
        sa.Column("external_payment_ref", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_wallet_transactions_account_id", "wallet_transactions", ["account_id"])
    op.create_index("ix_wallet_transactions_created_at", "wallet_transactions", ["created_at"])

    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("duration_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("direction", sa.String(16), nullable=False, server_default="inbound"),
        sa.Column("rate_at_time_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("plan_included", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("external_ref", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_usage_records_account_id", "usage_records", ["account_id"])
    op.create_index("ix_usage_records_created_at", "usage_records", ["created_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.String(64), nullable=False, unique=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        sa.Column("subtotal_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("wallet_applied_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_charged_minor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("external_invoice_ref", sa.String(255), nullable=True, unique=True),
        sa.Column("hosted_url", sa.String(1024), nullable=True),
        sa.Column("invoice_metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("account_id", "period_start", "period_end", name="uq_invoice_account_period"),
    )
    op.create_index("ix_invoices_account_id", "invoices", ["account_id"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False, server_default="applied"),
        sa.Column("received_at", sa.DateTime, nullable=False),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("details", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_account_id", "audit_logs", ["account_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("payment_events")
    op.drop_table("invoices")
    op.drop_table("usage_records")
    op.drop_table("wallet_transactions")
    op.drop_table("billing_accounts")
