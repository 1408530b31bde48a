"""
Billing Models
==============

SQLModel tables for persistent billing state:
- BillingAccount: one row per tenant; wallet balance + plan + processor refs.
- WalletTransaction: append-only ledger of every balance-affecting event.
- UsageRecord: immutable metered usage (one per call).
- Invoice: one row per billing-close result (charged or wallet-only).
- PaymentEventRecord: processor webhook deliveries (dedupe by event id).
- AuditLog: audit trail for payment failures, suspensions and webhooks.

All amounts are integers in the currency's minor unit. All timestamps are
naive UTC (SQLite drops tzinfo, so we never store aware datetimes).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Processor epoch seconds as naive UTC; None for a missing or zero value."""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid4())


class PlanType(str, Enum):
    PAY_PER_USE = "pay_per_use"
    UNLIMITED = "unlimited"


class UsageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TransactionKind(str, Enum):
    TOP_UP = "top_up"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    DEDUCTION = "deduction"
    REFUND = "refund"


CREDIT_KINDS = frozenset({TransactionKind.TOP_UP, TransactionKind.ADMIN_CREDIT, TransactionKind.REFUND})


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


# paid is terminal; draft/finalized never overwrite a settled status
_SETTLED_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.FAILED, InvoiceStatus.CANCELLED})


def invoice_status_may_change(current: str, new: str) -> bool:
    """True when moving an invoice from *current* to *new* is not a regression."""
    current_status = InvoiceStatus(current)
    new_status = InvoiceStatus(new)
    if current_status == new_status:
        return False
    if current_status == InvoiceStatus.PAID:
        return False
    if new_status in (InvoiceStatus.DRAFT, InvoiceStatus.FINALIZED):
        return current_status not in _SETTLED_STATUSES and not (
            current_status == InvoiceStatus.FINALIZED and new_status == InvoiceStatus.DRAFT
        )
    return True


class BillingAccount(SQLModel, table=True):
    """Per-tenant billing state. ``version`` guards wallet compare-and-swap."""

    __tablename__ = "billing_accounts"

    account_id: str = Field(primary_key=True, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=255)
    wallet_balance_minor: int = Field(default=0)
    inbound_plan: str = Field(default=PlanType.PAY_PER_USE.value, max_length=32)
    outbound_plan: str = Field(default=PlanType.PAY_PER_USE.value, max_length=32)
    inbound_rate_minor: int = Field(default=0)
    outbound_rate_minor: int = Field(default=0)
    external_customer_ref: Optional[str] = Field(default=None, index=True, max_length=255)
    external_subscription_ref: Optional[str] = Field(default=None, index=True, max_length=255)
    next_payment_at: Optional[datetime] = Field(default=None)
    grace_until: Optional[datetime] = Field(default=None)
    suspended_at: Optional[datetime] = Field(default=None)
    period_spent_minor: int = Field(default=0)
    period_added_minor: int = Field(default=0)
    is_active: bool = Field(default=True)
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class WalletTransaction(SQLModel, table=True):
    """Immutable ledger entry. ``amount_minor`` is always positive."""

    __tablename__ = "wallet_transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: str = Field(default_factory=_new_uuid, unique=True, max_length=64)
    account_id: str = Field(index=True, max_length=128)
    kind: str = Field(max_length=32)
    amount_minor: int
    balance_before_minor: int
    balance_after_minor: int
    reason: str = Field(default="", max_length=512)
    external_payment_ref: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, unique=True, max_length=255)
    created_at: datetime = Field(default_factory=utc_now, index=True)

    @property
    def signed_amount_minor(self) -> int:
        if TransactionKind(self.kind) in CREDIT_KINDS:
            return self.amount_minor
        return -self.amount_minor


class UsageRecord(SQLModel, table=True):
    """Metered unit of work (one call). Written by the metering side."""

    __tablename__ = "usage_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True, max_length=128)
    duration_seconds: int = Field(default=0)
    direction: str = Field(default=UsageDirection.INBOUND.value, max_length=16)
    rate_at_time_minor: int = Field(default=0)
    cost_minor: int = Field(default=0)
    plan_included: bool = Field(default=False)
    external_ref: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class Invoice(SQLModel, table=True):
    """Result of one billing close. subtotal = wallet_applied + total_charged."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("account_id", "period_start", "period_end", name="uq_invoice_account_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: str = Field(default_factory=_new_uuid, unique=True, max_length=64)
    account_id: str = Field(index=True, max_length=128)
    period_start: datetime
    period_end: datetime
    subtotal_minor: int = Field(default=0)
    wallet_applied_minor: int = Field(default=0)
    total_charged_minor: int = Field(default=0)
    status: str = Field(default=InvoiceStatus.DRAFT.value, max_length=32)
    external_invoice_ref: Optional[str] = Field(default=None, unique=True, max_length=255)
    hosted_url: Optional[str] = Field(default=None, max_length=1024)
    invoice_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PaymentEventRecord(SQLModel, table=True):
    """One row per processed webhook event id."""

    __tablename__ = "payment_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, max_length=255)
    event_type: str = Field(max_length=128)
    account_id: Optional[str] = Field(default=None, max_length=128)
    outcome: str = Field(default="applied", max_length=32)
    received_at: datetime = Field(default_factory=utc_now)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True, max_length=64)
    account_id: Optional[str] = Field(default=None, index=True, max_length=128)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now)
