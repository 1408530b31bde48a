"""
Billing Closer — closes one account's billing period
====================================================

PURPOSE:
    Converts an account's unbilled usage for a period into a charge,
    applying the prepaid wallet first:

        usage_summarized → wallet_computed → charged | wallet_only | skipped_no_usage
                         → recorded → period_reset → done

    ``failed`` is reachable from any step after usage_summarized; the
    exception is logged with the state it failed in and re-raised.

CONSERVATION:
    invoice.subtotal == invoice.wallet_applied + invoice.total_charged
    and the wallet deduction recorded for the close equals wallet_applied.

    The one exception is a balance that drops (admin debit) while the
    processor call is in flight: the invoice already carries the wallet
    credit line, so the closer deducts what is left and records the
    difference as ``wallet_shortfall_minor`` in the invoice metadata and a
    ``wallet_shortfall`` audit row. A recorded shortfall is final.

RE-RUNS:
    Invoices are unique per (account, period). When the period already has
    one, the closer never invoices again; it only completes a missing wallet
    deduction and the period reset (outcome ``already_closed``). The
    deduction's idempotency key and the processor Idempotency-Key are both
    derived from the account and period, so a crash at any point is safe to
    re-trigger.

Also home to manual (ad hoc) billing over an inclusive date range and the
next-payment estimate shown to tenants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from meterbill.core.errors import MissingCustomerReference
from meterbill.models.billing import (
    BillingAccount,
    Invoice,
    InvoiceStatus,
    invoice_status_may_change,
    to_naive_utc,
    utc_now,
)
from meterbill.services.billing_store import BillingStore
from meterbill.services.invoice_adapter import InvoiceAdapter
from meterbill.services.usage_aggregator import UsageAggregator, UsageSummary
from meterbill.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

__all__ = [
    "BillingCloser",
    "CloseOutcome",
    "CloseResult",
    "CloseState",
    "PaymentEstimate",
    "close_idempotency_key",
    "next_month_start",
]


class CloseState(str, Enum):
    START = "start"
    USAGE_SUMMARIZED = "usage_summarized"
    WALLET_COMPUTED = "wallet_computed"
    CHARGED = "charged"
    WALLET_ONLY = "wallet_only"
    SKIPPED_NO_USAGE = "skipped_no_usage"
    RECORDED = "recorded"
    PERIOD_RESET = "period_reset"
    DONE = "done"
    FAILED = "failed"


class CloseOutcome(str, Enum):
    CHARGED = "charged"
    WALLET_ONLY = "wallet_only"
    SKIPPED_NO_USAGE = "skipped_no_usage"
    ALREADY_CLOSED = "already_closed"
    PROJECTED = "projected"


def close_idempotency_key(account_id: str, period_start: datetime, period_end: datetime) -> str:
    return f"close:{account_id}:{period_start.isoformat()}:{period_end.isoformat()}"


def next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


@dataclass
class CloseResult:
    account_id: str
    period_start: datetime
    period_end: datetime
    outcome: CloseOutcome
    usage: UsageSummary
    wallet_balance_minor: int = 0
    wallet_applied_minor: int = 0
    wallet_shortfall_minor: int = 0
    to_charge_minor: int = 0
    invoice_id: Optional[str] = None
    external_invoice_ref: Optional[str] = None
    invoice_status: Optional[str] = None
    hosted_url: Optional[str] = None
    states: List[CloseState] = field(default_factory=list)

    @property
    def invoice_created(self) -> bool:
        return self.outcome in (CloseOutcome.CHARGED, CloseOutcome.WALLET_ONLY)

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "outcome": self.outcome.value,
            "usage": self.usage.as_dict(),
            "wallet_balance_minor": self.wallet_balance_minor,
            "wallet_applied_minor": self.wallet_applied_minor,
            "wallet_shortfall_minor": self.wallet_shortfall_minor,
            "to_charge_minor": self.to_charge_minor,
            "invoice_id": self.invoice_id,
            "external_invoice_ref": self.external_invoice_ref,
            "invoice_status": self.invoice_status,
            "hosted_url": self.hosted_url,
            "states": [s.value for s in self.states],
        }


@dataclass(frozen=True)
class PaymentEstimate:
    account_id: str
    period_spent_minor: int
    wallet_balance_minor: int
    amount_due_minor: int
    due_at: datetime

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "period_spent_minor": self.period_spent_minor,
            "wallet_balance_minor": self.wallet_balance_minor,
            "amount_due_minor": self.amount_due_minor,
            "due_at": self.due_at.isoformat(),
        }


class BillingCloser:

    def __init__(
        self,
        store: BillingStore,
        aggregator: UsageAggregator,
        ledger: WalletLedger,
        invoices: InvoiceAdapter,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.ledger = ledger
        self.invoices = invoices

    async def close(
        self,
        account_id: str,
        period_start: datetime,
        period_end: datetime,
        inclusive_end: bool = False,
        dry_run: bool = False,
        scheduled_by: str = "manual",
        reason: Optional[str] = None,
    ) -> CloseResult:
        """
        Close one account's period.

        ``inclusive_end`` selects ``[start, end]`` instead of ``[start, end)``.
        ``dry_run`` stops once the wallet split is known: no processor calls
        and nothing written.
        """
        start = to_naive_utc(period_start)
        end = to_naive_utc(period_end)
        reason = reason or f"period close {start.strftime('%Y-%m')}"
        states = [CloseState.START]

        account = self.store.get_account(account_id)
        existing = self.store.find_invoice_for_period(account_id, start, end)

        usage = self.aggregator.summarize(account_id, start, end, inclusive_end=inclusive_end)
        states.append(CloseState.USAGE_SUMMARIZED)

        try:
            if existing is not None:
                # The recorded invoice fixes the wallet split
                states.append(CloseState.WALLET_COMPUTED)
                return self._complete_existing(account, existing, usage, reason, dry_run, states)

            if usage.total_cost_minor <= 0:
                states.append(CloseState.SKIPPED_NO_USAGE)
                if not dry_run:
                    self.store.reset_period_spent(account_id)
                    states.append(CloseState.PERIOD_RESET)
                states.append(CloseState.DONE)
                logger.info("No billable usage for %s in %s..%s", account_id, start, end)
                return CloseResult(
                    account_id=account_id,
                    period_start=start,
                    period_end=end,
                    outcome=CloseOutcome.SKIPPED_NO_USAGE,
                    usage=usage,
                    wallet_balance_minor=account.wallet_balance_minor,
                    states=states,
                )

            balance = max(account.wallet_balance_minor, 0)
            wallet_applied = min(balance, usage.total_cost_minor)
            to_charge = usage.total_cost_minor - wallet_applied
            states.append(CloseState.WALLET_COMPUTED)

            result = CloseResult(
                account_id=account_id,
                period_start=start,
                period_end=end,
                outcome=CloseOutcome.PROJECTED,
                usage=usage,
                wallet_balance_minor=account.wallet_balance_minor,
                wallet_applied_minor=wallet_applied,
                to_charge_minor=to_charge,
                states=states,
            )
            if dry_run:
                states.append(CloseState.DONE)
                return result

            idempotency_key = close_idempotency_key(account_id, start, end)
            status = InvoiceStatus.PAID
            external_ref: Optional[str] = None
            hosted_url: Optional[str] = None

            if to_charge > 0:
                if not account.external_customer_ref:
                    raise MissingCustomerReference(
                        detail=f"account {account_id} has no processor customer",
                        context={"account_id": account_id, "to_charge_minor": to_charge},
                    )
                external = await self.invoices.charge(
                    customer_ref=account.external_customer_ref,
                    subtotal_minor=usage.total_cost_minor,
                    wallet_applied_minor=wallet_applied,
                    period_start=start,
                    period_end=end,
                    usage_summary=usage,
                    metadata={"account_id": account_id, "scheduled_by": scheduled_by},
                    idempotency_prefix=idempotency_key,
                )
                status = external.status
                external_ref = external.id
                hosted_url = external.hosted_url
                result.outcome = CloseOutcome.CHARGED
                states.append(CloseState.CHARGED)
            else:
                result.outcome = CloseOutcome.WALLET_ONLY
                states.append(CloseState.WALLET_ONLY)

            invoice = self._record_invoice(
                Invoice(
                    account_id=account_id,
                    period_start=start,
                    period_end=end,
                    subtotal_minor=usage.total_cost_minor,
                    wallet_applied_minor=wallet_applied,
                    total_charged_minor=to_charge,
                    status=status.value,
                    external_invoice_ref=external_ref,
                    hosted_url=hosted_url,
                    invoice_metadata={
                        "usage": usage.as_dict(),
                        "scheduled_by": scheduled_by,
                        "inclusive_end": inclusive_end,
                    },
                )
            )

            result.wallet_shortfall_minor = self._settle_wallet(invoice, reason)
            states.append(CloseState.RECORDED)

            self.store.reset_period_spent(account_id)
            states.append(CloseState.PERIOD_RESET)
            states.append(CloseState.DONE)

            result.invoice_id = invoice.invoice_id
            result.external_invoice_ref = external_ref
            result.invoice_status = invoice.status
            result.hosted_url = hosted_url
            logger.info(
                "Closed %s for %s..%s: outcome=%s subtotal=%d wallet=%d charged=%d",
                account_id, start, end, result.outcome.value,
                usage.total_cost_minor, wallet_applied, to_charge,
            )
            return result

        except Exception as exc:
            failed_in = states[-1]
            states.append(CloseState.FAILED)
            logger.error(
                "Billing close failed for %s in state %s: %s",
                account_id, failed_in.value, exc,
            )
            raise

    def _record_invoice(self, invoice: Invoice) -> Invoice:
        """
        Insert the close's invoice row.

        A processor webhook may have created the row first (same period via
        metadata, same external ref); in that case fill in the close's
        amounts and keep whichever status is further along.
        """
        try:
            return self.store.insert_invoice(invoice)
        except IntegrityError:
            current = self.store.find_invoice_for_period(
                invoice.account_id, invoice.period_start, invoice.period_end
            )
            if current is None and invoice.external_invoice_ref:
                current = self.store.find_invoice_by_external_ref(invoice.external_invoice_ref)
            if current is None:
                raise
            values = {
                "subtotal_minor": invoice.subtotal_minor,
                "wallet_applied_minor": invoice.wallet_applied_minor,
                "total_charged_minor": invoice.total_charged_minor,
                "invoice_metadata": invoice.invoice_metadata,
            }
            if invoice_status_may_change(current.status, invoice.status):
                values["status"] = invoice.status
            self.store.update_invoice(current.invoice_id, **values)
            logger.info("Invoice for %s already recorded by webhook; merged", invoice.account_id)
            merged = self.store.find_invoice_for_period(
                current.account_id, current.period_start, current.period_end
            )
            return merged or current

    def _settle_wallet(self, invoice: Invoice, reason: str) -> int:
        """
        Deduct the invoice's wallet credit from the ledger. Returns the shortfall.

        The deduction is keyed by account and period, so a re-run returns the
        earlier transaction. If the balance no longer covers the credit only
        what is left is deducted; the difference is written to the invoice
        metadata and the audit log once and later runs leave it alone.
        """
        wanted = invoice.wallet_applied_minor
        if wanted <= 0:
            return 0
        metadata = dict(invoice.invoice_metadata or {})
        if "wallet_shortfall_minor" in metadata:
            return int(metadata["wallet_shortfall_minor"])

        txn = self.ledger.deduct_available(
            invoice.account_id,
            wanted,
            reason=reason,
            external_ref=invoice.external_invoice_ref,
            idempotency_key=close_idempotency_key(
                invoice.account_id, invoice.period_start, invoice.period_end
            ),
        )
        deducted = txn.amount_minor if txn is not None else 0
        shortfall = wanted - deducted
        if shortfall <= 0:
            return 0

        metadata["wallet_deducted_minor"] = deducted
        metadata["wallet_shortfall_minor"] = shortfall
        self.store.update_invoice(invoice.invoice_id, invoice_metadata=metadata)
        self.store.add_audit_log(
            "wallet_shortfall",
            invoice.account_id,
            {
                "invoice_id": invoice.invoice_id,
                "external_invoice_ref": invoice.external_invoice_ref,
                "wallet_applied_minor": wanted,
                "wallet_deducted_minor": deducted,
                "wallet_shortfall_minor": shortfall,
            },
        )
        logger.warning(
            "Wallet for %s dropped during close; invoice %s credited %d, deducted %d",
            invoice.account_id, invoice.invoice_id, wanted, deducted,
        )
        return shortfall

    def _complete_existing(
        self,
        account: BillingAccount,
        invoice: Invoice,
        usage: UsageSummary,
        reason: str,
        dry_run: bool,
        states: List[CloseState],
    ) -> CloseResult:
        """Finish a period that was already invoiced without invoicing again."""
        result = CloseResult(
            account_id=account.account_id,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            outcome=CloseOutcome.ALREADY_CLOSED,
            usage=usage,
            wallet_balance_minor=account.wallet_balance_minor,
            wallet_applied_minor=invoice.wallet_applied_minor,
            to_charge_minor=invoice.total_charged_minor,
            invoice_id=invoice.invoice_id,
            external_invoice_ref=invoice.external_invoice_ref,
            invoice_status=invoice.status,
            hosted_url=invoice.hosted_url,
            states=states,
        )
        if dry_run:
            states.append(CloseState.DONE)
            return result

        result.wallet_shortfall_minor = self._settle_wallet(invoice, reason)
        states.append(CloseState.RECORDED)
        self.store.reset_period_spent(account.account_id)
        states.append(CloseState.PERIOD_RESET)
        states.append(CloseState.DONE)
        logger.info(
            "Period %s..%s for %s already invoiced (%s); completed remaining steps",
            invoice.period_start, invoice.period_end, account.account_id, invoice.invoice_id,
        )
        return result

    async def manual_billing(
        self,
        account_id: str,
        start_date: datetime,
        end_date: datetime,
        dry_run: bool = False,
        scheduled_by: str = "manual",
    ) -> CloseResult:
        """Ad hoc close over the inclusive range ``[start_date, end_date]``."""
        if to_naive_utc(end_date) < to_naive_utc(start_date):
            raise ValueError("end_date must not be before start_date")
        reason = f"manual billing {start_date.date().isoformat()}..{end_date.date().isoformat()}"
        return await self.close(
            account_id,
            start_date,
            end_date,
            inclusive_end=True,
            dry_run=dry_run,
            scheduled_by=scheduled_by,
            reason=reason,
        )

    def estimate_next_payment(self, account_id: str, now: Optional[datetime] = None) -> PaymentEstimate:
        """What the next close would charge if the period ended now."""
        account = self.store.get_account(account_id)
        now = to_naive_utc(now) if now is not None else utc_now()
        due = max(0, account.period_spent_minor - account.wallet_balance_minor)
        return PaymentEstimate(
            account_id=account_id,
            period_spent_minor=account.period_spent_minor,
            wallet_balance_minor=account.wallet_balance_minor,
            amount_due_minor=due,
            due_at=next_month_start(now),
        )
