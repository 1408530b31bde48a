"""
Subscription Sync — moves an account onto its new subscription
==============================================================

PURPOSE:
    After an unlimited-plan checkout the account is synced from the
    processor's subscription and its prepaid wallet is spent on the
    subscription's first invoice (capped at ``subscription_wallet_cap_minor``):

        GET  /subscriptions/{id}              → customer, period end, latest invoice
        POST /invoices/{latest}/add_lines     → "Wallet credit applied" (−credit)
        ledger deduction                      → key subscription-wallet:<invoice id>

IDEMPOTENCY:
    The wallet credit is applied at most once per invoice. The ledger key is
    checked before any processor call, and the add_lines POST carries the
    same key as its Idempotency-Key, so a sync repeated after a crash gets
    the processor's earlier line back.

A balance that drops between the read and the deduction is settled like a
period close: what is left is deducted and the shortfall is audited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from meterbill.models.billing import PlanType, from_epoch
from meterbill.services.billing_store import BillingStore
from meterbill.services.invoice_adapter import InvoiceAdapter
from meterbill.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionSync", "SubscriptionSyncResult", "subscription_wallet_key"]

_WALLET_REASON = "Applied to unlimited plan first invoice"


def subscription_wallet_key(invoice_ref: str) -> str:
    return f"subscription-wallet:{invoice_ref}"


@dataclass
class SubscriptionSyncResult:
    account_id: str
    subscription_ref: str
    next_payment_at: Optional[datetime] = None
    invoice_ref: Optional[str] = None
    wallet_applied_minor: int = 0
    wallet_shortfall_minor: int = 0
    already_applied: bool = False

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "subscription_ref": self.subscription_ref,
            "next_payment_at": self.next_payment_at.isoformat() if self.next_payment_at else None,
            "invoice_ref": self.invoice_ref,
            "wallet_applied_minor": self.wallet_applied_minor,
            "wallet_shortfall_minor": self.wallet_shortfall_minor,
            "already_applied": self.already_applied,
        }


class SubscriptionSync:

    def __init__(
        self,
        store: BillingStore,
        ledger: WalletLedger,
        invoices: InvoiceAdapter,
        wallet_cap_minor: int = 50000,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.invoices = invoices
        self.wallet_cap_minor = wallet_cap_minor

    async def sync(self, account_id: str, subscription_ref: str) -> SubscriptionSyncResult:
        """
        Store the subscription on the account and credit its latest invoice.

        Raises:
            AccountNotFound: unknown account.
            ExternalInvoiceError: the processor rejected a call or could not be reached.
        """
        account = self.store.get_account(account_id)
        subscription = await self.invoices.get_subscription(subscription_ref)

        next_payment_at = from_epoch(subscription.period_end_epoch)
        values = {
            "inbound_plan": PlanType.UNLIMITED.value,
            "external_subscription_ref": subscription.id,
            "next_payment_at": next_payment_at,
        }
        if not account.external_customer_ref and subscription.customer:
            values["external_customer_ref"] = subscription.customer
        self.store.update_account(account_id, **values)

        result = SubscriptionSyncResult(
            account_id=account_id,
            subscription_ref=subscription.id,
            next_payment_at=next_payment_at,
            invoice_ref=subscription.latest_invoice,
        )
        invoice_ref = subscription.latest_invoice
        if not invoice_ref:
            logger.info("Subscription %s has no invoice yet; wallet untouched", subscription.id)
            return result

        key = subscription_wallet_key(invoice_ref)
        earlier = self.store.find_transaction_by_key(key)
        if earlier is not None:
            logger.info("Wallet already applied to invoice %s for %s", invoice_ref, account_id)
            result.wallet_applied_minor = earlier.amount_minor
            result.already_applied = True
            return result

        credit = min(max(account.wallet_balance_minor, 0), self.wallet_cap_minor)
        if credit <= 0:
            return result

        await self.invoices.add_wallet_credit_line(invoice_ref, credit, idempotency_key=key)
        txn = self.ledger.deduct_available(
            account_id, credit, reason=_WALLET_REASON, external_ref=invoice_ref, idempotency_key=key,
        )
        deducted = txn.amount_minor if txn is not None else 0
        result.wallet_applied_minor = credit
        result.wallet_shortfall_minor = credit - deducted

        if result.wallet_shortfall_minor:
            self.store.add_audit_log(
                "wallet_shortfall",
                account_id,
                {
                    "external_invoice_ref": invoice_ref,
                    "wallet_applied_minor": credit,
                    "wallet_deducted_minor": deducted,
                    "wallet_shortfall_minor": result.wallet_shortfall_minor,
                },
            )
            logger.warning(
                "Wallet for %s dropped during subscription sync; credited %d, deducted %d",
                account_id, credit, deducted,
            )
        logger.info(
            "Subscription %s synced for %s: wallet credit %d on invoice %s",
            subscription.id, account_id, credit, invoice_ref,
        )
        return result
