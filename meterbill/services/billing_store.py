"""
Billing Store — persistence for accounts, ledger, usage, invoices
=================================================================

PURPOSE:
    Thin data-access layer over SQLModel/SQLAlchemy shared by every billing
    component. Reads go through SQLModel sessions; writes that must be atomic
    (wallet compare-and-swap, counter increments, status updates) go through
    SQLAlchemy Core inside ``engine.begin()`` so each one is a single
    transaction.

    The store is stateless apart from the engine it is given, so each batch
    run or webhook delivery can build its own.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from meterbill.core.database import get_session_context
from meterbill.core.errors import AccountNotFound, ConcurrentModification
from meterbill.models.billing import (
    AuditLog,
    BillingAccount,
    Invoice,
    PaymentEventRecord,
    PlanType,
    UsageRecord,
    WalletTransaction,
    utc_now,
)

logger = logging.getLogger(__name__)

_accounts = BillingAccount.__table__
_transactions = WalletTransaction.__table__
_invoices = Invoice.__table__


class BillingStore:
    """Account / ledger / invoice persistence keyed by account id."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _session(self):
        return get_session_context(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account_id: str, **fields: Any) -> BillingAccount:
        """Insert a new account. The wallet always starts at zero."""
        fields.pop("wallet_balance_minor", None)
        account = BillingAccount(account_id=account_id, **fields)
        with self._session() as session:
            session.add(account)
            session.commit()
            session.refresh(account)
        return account

    def find_account(self, account_id: str) -> Optional[BillingAccount]:
        with self._session() as session:
            return session.get(BillingAccount, account_id)

    def get_account(self, account_id: str) -> BillingAccount:
        account = self.find_account(account_id)
        if account is None:
            raise AccountNotFound(detail=account_id, context={"account_id": account_id})
        return account

    def find_account_by_customer_ref(self, customer_ref: str) -> Optional[BillingAccount]:
        with self._session() as session:
            stmt = select(BillingAccount).where(BillingAccount.external_customer_ref == customer_ref)
            return session.exec(stmt).first()

    def find_account_by_subscription_ref(self, subscription_ref: str) -> Optional[BillingAccount]:
        with self._session() as session:
            stmt = select(BillingAccount).where(
                BillingAccount.external_subscription_ref == subscription_ref
            )
            return session.exec(stmt).first()

    def list_billable_accounts(self) -> List[BillingAccount]:
        """Active accounts with at least one pay-per-use plan, by account id."""
        ppu = PlanType.PAY_PER_USE.value
        with self._session() as session:
            stmt = (
                select(BillingAccount)
                .where(BillingAccount.is_active == True)  # noqa: E712
                .where(sa.or_(BillingAccount.inbound_plan == ppu, BillingAccount.outbound_plan == ppu))
                .order_by(BillingAccount.account_id.asc())
            )
            return list(session.exec(stmt).all())

    def update_account(self, account_id: str, **values: Any) -> None:
        """Set plain (non-balance) account fields."""
        if "wallet_balance_minor" in values:
            raise ValueError("wallet balance is only written by the wallet ledger")
        values["updated_at"] = utc_now()
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.account_id == account_id).values(**values)
            )
        if result.rowcount == 0:
            raise AccountNotFound(detail=account_id, context={"account_id": account_id})

    def add_period_spent(self, account_id: str, delta_minor: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.account_id == account_id)
                .values(
                    period_spent_minor=_accounts.c.period_spent_minor + delta_minor,
                    updated_at=utc_now(),
                )
            )

    def reset_period_spent(self, account_id: str) -> None:
        self.update_account(account_id, period_spent_minor=0)

    # ------------------------------------------------------------------
    # Wallet ledger
    # ------------------------------------------------------------------

    def swap_balance(
        self,
        account: BillingAccount,
        balance_after: int,
        transaction: WalletTransaction,
        period_added_delta: int = 0,
    ) -> WalletTransaction:
        """
        Atomically move the balance from the value read in *account* to
        *balance_after* and append *transaction*.

        The UPDATE is conditional on both the balance and the version that
        were read; if another writer got there first no row matches and
        ConcurrentModification is raised with nothing written.
        IntegrityError (duplicate idempotency key) also rolls back both writes.
        """
        values = transaction.model_dump(exclude={"id"})
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.account_id == account.account_id)
                .where(_accounts.c.wallet_balance_minor == account.wallet_balance_minor)
                .where(_accounts.c.version == account.version)
                .values(
                    wallet_balance_minor=balance_after,
                    version=_accounts.c.version + 1,
                    period_added_minor=_accounts.c.period_added_minor + period_added_delta,
                    updated_at=utc_now(),
                )
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    detail=f"wallet for {account.account_id} changed during update",
                    context={
                        "account_id": account.account_id,
                        "expected_balance": account.wallet_balance_minor,
                        "expected_version": account.version,
                    },
                )
            inserted = conn.execute(_transactions.insert().values(**values))
            transaction.id = inserted.inserted_primary_key[0]
        return transaction

    def find_transaction_by_key(self, idempotency_key: str) -> Optional[WalletTransaction]:
        with self._session() as session:
            stmt = select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
            return session.exec(stmt).first()

    def list_transactions(self, account_id: str) -> List[WalletTransaction]:
        """Ledger rows in replay order (created_at, then insertion id)."""
        with self._session() as session:
            stmt = (
                select(WalletTransaction)
                .where(WalletTransaction.account_id == account_id)
                .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
            )
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def insert_usage(self, record: UsageRecord) -> UsageRecord:
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    def usage_totals(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        inclusive_end: bool = False,
    ) -> Dict[bool, Dict[str, int]]:
        """
        Sum cost/seconds/count per ``plan_included`` flag over the window.

        Returns ``{plan_included: {"cost": .., "seconds": .., "count": ..}}``.
        """
        end_clause = UsageRecord.created_at <= end if inclusive_end else UsageRecord.created_at < end
        stmt = (
            select(
                UsageRecord.plan_included,
                sa.func.coalesce(sa.func.sum(UsageRecord.cost_minor), 0),
                sa.func.coalesce(sa.func.sum(UsageRecord.duration_seconds), 0),
                sa.func.count(UsageRecord.id),
            )
            .where(UsageRecord.account_id == account_id)
            .where(UsageRecord.created_at >= start)
            .where(end_clause)
            .group_by(UsageRecord.plan_included)
        )
        totals: Dict[bool, Dict[str, int]] = {}
        with self._session() as session:
            for included, cost, seconds, count in session.exec(stmt).all():
                totals[bool(included)] = {
                    "cost": int(cost),
                    "seconds": int(seconds),
                    "count": int(count),
                }
        return totals

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def find_invoice_for_period(
        self, account_id: str, period_start: datetime, period_end: datetime
    ) -> Optional[Invoice]:
        with self._session() as session:
            stmt = (
                select(Invoice)
                .where(Invoice.account_id == account_id)
                .where(Invoice.period_start == period_start)
                .where(Invoice.period_end == period_end)
            )
            return session.exec(stmt).first()

    def find_invoice_by_external_ref(self, external_ref: str) -> Optional[Invoice]:
        with self._session() as session:
            stmt = select(Invoice).where(Invoice.external_invoice_ref == external_ref)
            return session.exec(stmt).first()

    def list_invoices(self, account_id: str) -> List[Invoice]:
        with self._session() as session:
            stmt = select(Invoice).where(Invoice.account_id == account_id).order_by(Invoice.id.asc())
            return list(session.exec(stmt).all())

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert an invoice row. Raises IntegrityError on a duplicate period/ref."""
        with self._session() as session:
            session.add(invoice)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise
            session.refresh(invoice)
        return invoice

    def update_invoice(self, invoice_id: str, **values: Any) -> None:
        values["updated_at"] = utc_now()
        with self.engine.begin() as conn:
            conn.execute(
                _invoices.update().where(_invoices.c.invoice_id == invoice_id).values(**values)
            )

    # ------------------------------------------------------------------
    # Webhook deliveries / audit
    # ------------------------------------------------------------------

    def has_event(self, event_id: str) -> bool:
        with self._session() as session:
            stmt = select(PaymentEventRecord.id).where(PaymentEventRecord.event_id == event_id)
            return session.exec(stmt).first() is not None

    def record_event(
        self, event_id: str, event_type: str, account_id: Optional[str], outcome: str
    ) -> bool:
        """Remember a processed event. Returns False if it was already recorded."""
        row = PaymentEventRecord(
            event_id=event_id, event_type=event_type, account_id=account_id, outcome=outcome,
        )
        with self._session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Duplicate payment event record: %s", event_id)
                return False
        return True

    def add_audit_log(self, action: str, account_id: Optional[str], details: Dict[str, Any]) -> None:
        with self._session() as session:
            session.add(AuditLog(action=action, account_id=account_id, details=details))
            session.commit()

    def list_audit_logs(self, action: Optional[str] = None) -> List[AuditLog]:
        with self._session() as session:
            stmt = select(AuditLog).order_by(AuditLog.id.asc())
            if action:
                stmt = stmt.where(AuditLog.action == action)
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Dunning
    # ------------------------------------------------------------------

    def list_past_due(self, cutoff: datetime) -> List[BillingAccount]:
        """Active, not yet suspended accounts whose grace ended before *cutoff*."""
        with self._session() as session:
            stmt = (
                select(BillingAccount)
                .where(BillingAccount.is_active == True)  # noqa: E712
                .where(BillingAccount.grace_until.is_not(None))
                .where(BillingAccount.grace_until < cutoff)
                .where(BillingAccount.suspended_at.is_(None))
                .order_by(BillingAccount.account_id.asc())
            )
            return list(session.exec(stmt).all())
