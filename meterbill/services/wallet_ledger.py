"""
Wallet Ledger — prepaid balance backed by an append-only transaction log
========================================================================

PURPOSE:
    The only writer of ``billing_accounts.wallet_balance_minor``. Every
    change is one ``WalletTransaction`` row written in the same database
    transaction as the balance update, so that for every account:

        stored balance == Σ credits − Σ debits   (replayed in created order)

CONCURRENCY:
    The balance update is a compare-and-swap on (balance, version) as read.
    A lost race raises ConcurrentModification (retryable) and ``apply()``
    re-reads and tries again through the shared RetryPolicy.

IDEMPOTENCY:
    Callers that may repeat an operation (period close, checkout webhooks)
    pass an ``idempotency_key``. A second apply with a known key returns the
    original transaction and leaves the balance alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from meterbill.core.errors import InsufficientBalance, InvalidAmount
from meterbill.core.retry import RetryPolicy
from meterbill.models.billing import (
    CREDIT_KINDS,
    TransactionKind,
    WalletTransaction,
)
from meterbill.services.billing_store import BillingStore

logger = logging.getLogger(__name__)

__all__ = ["LedgerCheck", "WalletLedger"]

# Credits that count as money added this period (refunds do not)
_PERIOD_ADDED_KINDS = frozenset({TransactionKind.TOP_UP, TransactionKind.ADMIN_CREDIT})


@dataclass(frozen=True)
class LedgerCheck:
    """Result of replaying an account's ledger against its stored balance."""
    account_id: str
    stored_balance_minor: int
    replayed_balance_minor: int
    transaction_count: int
    chain_breaks: int = 0

    @property
    def consistent(self) -> bool:
        return self.stored_balance_minor == self.replayed_balance_minor and self.chain_breaks == 0

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "stored_balance_minor": self.stored_balance_minor,
            "replayed_balance_minor": self.replayed_balance_minor,
            "transaction_count": self.transaction_count,
            "chain_breaks": self.chain_breaks,
            "consistent": self.consistent,
        }


class WalletLedger:

    def __init__(self, store: BillingStore, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)

    def apply(
        self,
        account_id: str,
        kind: TransactionKind,
        amount_minor: int,
        reason: str,
        external_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Credit or debit the wallet by *amount_minor* and log the transaction.

        Raises:
            InvalidAmount: amount ≤ 0, or an admin debit against an empty wallet.
            InsufficientBalance: a deduction larger than the balance.
            AccountNotFound: unknown account.
            ConcurrentModification: still losing the race after all attempts.
        """
        kind = TransactionKind(kind)
        if amount_minor <= 0:
            raise InvalidAmount(
                detail=f"amount must be positive, got {amount_minor}",
                context={"account_id": account_id, "kind": kind.value},
            )

        return self._apply_keyed(
            account_id, kind, amount_minor, reason, external_ref, idempotency_key, partial=False
        )

    def deduct_available(
        self,
        account_id: str,
        amount_minor: int,
        reason: str,
        external_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[WalletTransaction]:
        """
        Deduct *amount_minor*, or whatever is left if the balance is lower.

        Settles wallet credit that was already granted on a processor invoice,
        where refusing the deduction would leave the invoice and the ledger
        disagreeing. Returns None when the wallet is empty; with a known
        ``idempotency_key`` returns the earlier transaction.
        """
        if amount_minor <= 0:
            raise InvalidAmount(
                detail=f"amount must be positive, got {amount_minor}",
                context={"account_id": account_id, "kind": TransactionKind.DEDUCTION.value},
            )
        return self._apply_keyed(
            account_id, TransactionKind.DEDUCTION, amount_minor, reason,
            external_ref, idempotency_key, partial=True,
        )

    def _apply_keyed(
        self,
        account_id: str,
        kind: TransactionKind,
        amount_minor: int,
        reason: str,
        external_ref: Optional[str],
        idempotency_key: Optional[str],
        partial: bool,
    ) -> Optional[WalletTransaction]:
        if idempotency_key:
            existing = self.store.find_transaction_by_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Wallet %s for %s already applied (key=%s)",
                    kind.value, account_id, idempotency_key,
                )
                return existing

        try:
            return self.retry_policy.run(
                lambda: self._apply_once(
                    account_id, kind, amount_minor, reason, external_ref, idempotency_key, partial
                ),
                description=f"wallet {kind.value} for {account_id}",
            )
        except IntegrityError:
            # Another writer committed the same idempotency key first
            existing = self.store.find_transaction_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing

    def _apply_once(
        self,
        account_id: str,
        kind: TransactionKind,
        amount_minor: int,
        reason: str,
        external_ref: Optional[str],
        idempotency_key: Optional[str],
        partial: bool = False,
    ) -> Optional[WalletTransaction]:
        account = self.store.get_account(account_id)
        before = account.wallet_balance_minor

        if kind in CREDIT_KINDS:
            applied = amount_minor
            after = before + applied
        elif kind == TransactionKind.ADMIN_DEBIT:
            if before <= 0:
                raise InvalidAmount(
                    detail="cannot debit an empty wallet",
                    context={"account_id": account_id, "requested_minor": amount_minor},
                )
            applied = min(amount_minor, before)
            after = before - applied
        elif partial:
            if before <= 0:
                logger.warning(
                    "Wallet for %s is empty; %d of deduction not covered", account_id, amount_minor,
                )
                return None
            applied = min(amount_minor, before)
            after = before - applied
        else:
            if amount_minor > before:
                raise InsufficientBalance(
                    detail=f"deduction {amount_minor} exceeds balance {before}",
                    context={"account_id": account_id, "balance_minor": before},
                )
            applied = amount_minor
            after = before - applied

        txn = WalletTransaction(
            account_id=account_id,
            kind=kind.value,
            amount_minor=applied,
            balance_before_minor=before,
            balance_after_minor=after,
            reason=reason,
            external_payment_ref=external_ref,
            idempotency_key=idempotency_key,
        )
        period_added = applied if kind in _PERIOD_ADDED_KINDS else 0
        txn = self.store.swap_balance(account, after, txn, period_added_delta=period_added)

        logger.info(
            "Wallet %s: account=%s amount=%d balance %d -> %d",
            kind.value, account_id, applied, before, after,
        )
        return txn

    def history(self, account_id: str) -> List[WalletTransaction]:
        """All transactions for the account, oldest first."""
        self.store.get_account(account_id)
        return self.store.list_transactions(account_id)

    def replay_balance(self, account_id: str) -> int:
        return sum(txn.signed_amount_minor for txn in self.history(account_id))

    def verify(self, account_id: str) -> LedgerCheck:
        """Replay the ledger and compare with the stored balance."""
        account = self.store.get_account(account_id)
        transactions = self.store.list_transactions(account_id)

        running = 0
        breaks = 0
        for txn in transactions:
            if txn.balance_before_minor != running:
                breaks += 1
            running += txn.signed_amount_minor
            if txn.balance_after_minor != running:
                breaks += 1

        check = LedgerCheck(
            account_id=account_id,
            stored_balance_minor=account.wallet_balance_minor,
            replayed_balance_minor=running,
            transaction_count=len(transactions),
            chain_breaks=breaks,
        )
        if not check.consistent:
            logger.warning(
                "Ledger mismatch for %s: stored=%d replayed=%d breaks=%d",
                account_id, check.stored_balance_minor, running, breaks,
            )
        return check
