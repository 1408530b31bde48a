"""
Payment Event Reconciler — applies processor webhooks to local state
====================================================================

PURPOSE:
    Verifies and parses processor webhook deliveries and folds them into
    invoices, account plans, dunning state and the wallet:

        invoice.finalized               → invoice finalized, period_spent reset
        invoice.paid                    → invoice paid, grace/suspension cleared
        invoice.payment_failed          → invoice failed, grace window opened, audit
        customer.subscription.updated   → inbound plan unlimited, next payment date
        customer.subscription.deleted   → inbound plan back to pay-per-use
        checkout.session.completed      → wallet top-up (keyed by session id), or
                                          subscription upgrade (unlimited_upgrade)

DELIVERY SEMANTICS:
    Deliveries may repeat or arrive out of order. Event ids are recorded in
    ``payment_events`` and repeats are skipped; invoices are upserted by
    their processor id and their status never moves backwards. Business
    mismatches (no matching account, unknown event type) are logged and
    acknowledged. Only an invalid signature fails the request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from meterbill.config import Settings
from meterbill.core.errors import UnresolvedEventTarget
from meterbill.models.billing import (
    BillingAccount,
    Invoice,
    InvoiceStatus,
    PlanType,
    TransactionKind,
    from_epoch,
    invoice_status_may_change,
    utc_now,
)
from meterbill.models.events import (
    CheckoutSessionCompleted,
    CheckoutSessionObject,
    InvoiceFinalized,
    InvoiceObject,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
    parse_event,
)
from meterbill.services import webhook_signature
from meterbill.services.billing_store import BillingStore
from meterbill.services.dunning import DunningService
from meterbill.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

__all__ = ["PaymentReconciler", "ReconcileResult"]

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
STALE = "stale"
UNRESOLVED = "unresolved"

_TOP_UP_CHECKOUTS = frozenset({"wallet_topup", "first_login_wallet", "first_login_combined"})
_UPGRADE_CHECKOUT = "unlimited_upgrade"


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: str
    account_id: Optional[str] = None
    # Set for an upgrade checkout whose first invoice still needs the wallet credit
    subscription_ref: Optional[str] = None


class PaymentReconciler:

    def __init__(
        self,
        store: BillingStore,
        ledger: WalletLedger,
        dunning: DunningService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.dunning = dunning
        self.settings = settings

    def handle(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises InvalidSignature before anything is read or written, and
        ValueError / pydantic.ValidationError for a body that is not an event.
        """
        webhook_signature.verify(
            raw_payload,
            signature_header,
            self.settings.require_webhook_secret(),
            tolerance_s=self.settings.webhook_tolerance_s,
            now=now,
        )
        payload = json.loads(raw_payload)
        if not isinstance(payload, dict):
            raise ValueError("webhook body is not a JSON object")
        event = parse_event(payload)
        logger.info("Processing webhook event %s (%s)", event.id, event.type)

        if self.store.has_event(event.id):
            logger.info("Skipping duplicate webhook event %s", event.id)
            return ReconcileResult(event.id, event.type, DUPLICATE)

        outcome, account_id = self.apply_event(event)

        if not self.store.record_event(event.id, event.type, account_id, outcome):
            return ReconcileResult(event.id, event.type, DUPLICATE, account_id)
        self.store.add_audit_log(
            "payment_webhook",
            account_id,
            {"event_id": event.id, "event_type": event.type, "outcome": outcome},
        )
        subscription_ref = None
        if (
            outcome == APPLIED
            and isinstance(event, CheckoutSessionCompleted)
            and event.data.object.metadata.get("type") == _UPGRADE_CHECKOUT
        ):
            subscription_ref = event.data.object.subscription
        return ReconcileResult(event.id, event.type, outcome, account_id, subscription_ref)

    def apply_event(self, event: PaymentEvent) -> Tuple[str, Optional[str]]:
        """Apply a parsed event. Returns (outcome, account_id)."""
        try:
            if isinstance(event, InvoiceFinalized):
                return self._on_invoice(event, InvoiceStatus.FINALIZED)
            if isinstance(event, InvoicePaid):
                return self._on_invoice(event, InvoiceStatus.PAID)
            if isinstance(event, InvoicePaymentFailed):
                return self._on_invoice(event, InvoiceStatus.FAILED)
            if isinstance(event, SubscriptionUpdated):
                return self._on_subscription_updated(event)
            if isinstance(event, SubscriptionDeleted):
                return self._on_subscription_deleted(event)
            if isinstance(event, CheckoutSessionCompleted):
                return self._on_checkout_completed(event)
        except UnresolvedEventTarget as exc:
            logger.warning(
                "No account for webhook event %s (%s): %s", event.id, event.type, exc.detail,
            )
            return UNRESOLVED, None

        logger.info("Unhandled webhook event type: %s", event.type)
        return IGNORED, None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve(
        self,
        metadata: Dict[str, str],
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
    ) -> BillingAccount:
        account_id = metadata.get("account_id")
        if account_id:
            account = self.store.find_account(account_id)
            if account is not None:
                return account
        if customer_ref:
            account = self.store.find_account_by_customer_ref(customer_ref)
            if account is not None:
                return account
        if subscription_ref:
            account = self.store.find_account_by_subscription_ref(subscription_ref)
            if account is not None:
                return account
        raise UnresolvedEventTarget(
            detail=f"account_id={account_id} customer={customer_ref} subscription={subscription_ref}",
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def _on_invoice(self, event, status: InvoiceStatus) -> Tuple[str, Optional[str]]:
        invoice = event.data.object
        account = self._resolve(invoice.metadata, invoice.customer, invoice.subscription)
        account_id = account.account_id

        changed, recorded = self._upsert_invoice(account, invoice, status, event.created_at)

        # Account effects follow the recorded status, which the close may
        # have set before this delivery (finalize can return paid directly)
        if status == InvoiceStatus.PAID:
            self.dunning.clear_grace(account_id)
        elif status == InvoiceStatus.FAILED and recorded == InvoiceStatus.FAILED.value:
            if changed or account.grace_until is None:
                grace_until = self.dunning.enter_grace(account_id, event.created_at or utc_now())
            else:
                grace_until = account.grace_until
            if changed:
                self.store.add_audit_log(
                    "payment_failed",
                    account_id,
                    {
                        "invoice_ref": invoice.id,
                        "amount_due_minor": invoice.amount_due,
                        "grace_until": grace_until.isoformat(),
                    },
                )
        elif status == InvoiceStatus.FINALIZED and changed:
            self.store.reset_period_spent(account_id)

        if not changed:
            logger.info("Invoice %s stays %s; %s not written", invoice.id, recorded, event.type)
            if status == InvoiceStatus.PAID or recorded == status.value:
                return APPLIED, account_id
            return STALE, account_id

        logger.info("Invoice %s for %s is now %s", invoice.id, account_id, status.value)
        return APPLIED, account_id

    def _invoice_period(
        self, invoice: InvoiceObject, fallback: Optional[datetime]
    ) -> Tuple[datetime, datetime]:
        start = _from_iso(invoice.metadata.get("period_start"))
        end = _from_iso(invoice.metadata.get("period_end"))
        if start and end:
            return start, end

        start = from_epoch(invoice.period_start)
        end = from_epoch(invoice.period_end)
        if not (start and end) and invoice.lines.data and invoice.lines.data[0].period:
            line_period = invoice.lines.data[0].period
            start = start or from_epoch(line_period.start)
            end = end or from_epoch(line_period.end)
        now = fallback or utc_now()
        return start or now, end or now

    def _upsert_invoice(
        self,
        account: BillingAccount,
        invoice: InvoiceObject,
        status: InvoiceStatus,
        event_time: Optional[datetime],
    ) -> Tuple[bool, Optional[str]]:
        """
        Create or advance the local invoice.

        Returns (changed, status now recorded). The status is None when the
        period already holds a different processor invoice.
        """
        existing = self.store.find_invoice_by_external_ref(invoice.id)
        if existing is None:
            period_start, period_end = self._invoice_period(invoice, event_time)
            by_period = self.store.find_invoice_for_period(account.account_id, period_start, period_end)
            if by_period is not None and by_period.external_invoice_ref in (None, invoice.id):
                existing = by_period

        if existing is not None:
            if not invoice_status_may_change(existing.status, status.value):
                return False, existing.status
            values = {
                "status": status.value,
                "hosted_url": invoice.hosted_invoice_url or existing.hosted_url,
            }
            if existing.external_invoice_ref is None:
                values["external_invoice_ref"] = invoice.id
            self.store.update_invoice(existing.invoice_id, **values)
            return True, status.value

        wallet_applied = invoice.wallet_credit_minor
        if invoice.amount_due is not None:
            charged = invoice.amount_due
        else:
            charged = invoice.total or 0
        row = Invoice(
            account_id=account.account_id,
            period_start=period_start,
            period_end=period_end,
            subtotal_minor=charged + wallet_applied,
            wallet_applied_minor=wallet_applied,
            total_charged_minor=charged,
            status=status.value,
            external_invoice_ref=invoice.id,
            hosted_url=invoice.hosted_invoice_url,
            invoice_metadata={
                "source": "webhook",
                "number": invoice.number,
                "billing_reason": invoice.billing_reason,
            },
        )
        try:
            self.store.insert_invoice(row)
        except IntegrityError:
            # Lost a race with the closer or a concurrent delivery; advance instead
            current = self.store.find_invoice_by_external_ref(invoice.id)
            if current is None:
                logger.warning(
                    "Period of invoice %s already has another invoice for %s",
                    invoice.id, account.account_id,
                )
                return False, None
            if not invoice_status_may_change(current.status, status.value):
                return False, current.status
            self.store.update_invoice(
                current.invoice_id,
                status=status.value,
                hosted_url=invoice.hosted_invoice_url or current.hosted_url,
            )
        return True, status.value

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _on_subscription_updated(self, event: SubscriptionUpdated) -> Tuple[str, Optional[str]]:
        subscription = event.data.object
        account = self._resolve(subscription.metadata, subscription.customer, subscription.id)
        values = {
            "inbound_plan": PlanType.UNLIMITED.value,
            "external_subscription_ref": subscription.id,
            "next_payment_at": from_epoch(subscription.period_end_epoch),
        }
        if not account.external_customer_ref and subscription.customer:
            values["external_customer_ref"] = subscription.customer
        self.store.update_account(account.account_id, **values)
        logger.info(
            "Subscription %s active for %s; next payment %s",
            subscription.id, account.account_id, values["next_payment_at"],
        )
        return APPLIED, account.account_id

    def _on_subscription_deleted(self, event: SubscriptionDeleted) -> Tuple[str, Optional[str]]:
        subscription = event.data.object
        account = self._resolve(subscription.metadata, subscription.customer, subscription.id)
        self.store.update_account(
            account.account_id,
            inbound_plan=PlanType.PAY_PER_USE.value,
            external_subscription_ref=None,
            next_payment_at=None,
        )
        logger.info("Subscription %s cancelled for %s", subscription.id, account.account_id)
        return APPLIED, account.account_id

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, event: CheckoutSessionCompleted) -> Tuple[str, Optional[str]]:
        session = event.data.object
        checkout_type = session.metadata.get("type", "")
        account = self._resolve(session.metadata, session.customer, session.subscription)
        account_id = account.account_id

        amount = 0
        if checkout_type in _TOP_UP_CHECKOUTS:
            amount = self._top_up_amount(session, checkout_type)
            if amount is None:
                logger.warning(
                    "Checkout %s for %s has unusable wallet_topup_minor %r; ignored",
                    session.id, account_id, session.metadata.get("wallet_topup_minor"),
                )
                return IGNORED, account_id

        if not account.external_customer_ref and session.customer:
            self.store.update_account(account_id, external_customer_ref=session.customer)

        if checkout_type == _UPGRADE_CHECKOUT and session.subscription:
            self.store.update_account(account_id, external_subscription_ref=session.subscription)
            logger.info("Checkout %s upgraded %s to subscription %s", session.id, account_id, session.subscription)
            return APPLIED, account_id

        if checkout_type not in _TOP_UP_CHECKOUTS:
            logger.info("Checkout %s of type %r carries no wallet credit", session.id, checkout_type)
            return IGNORED, account_id

        if amount <= 0:
            logger.info("Checkout %s for %s has no top-up amount", session.id, account_id)
            return IGNORED, account_id

        self.ledger.apply(
            account_id,
            TransactionKind.TOP_UP,
            amount,
            reason=f"wallet top-up via checkout ({checkout_type})",
            external_ref=session.payment_intent,
            idempotency_key=f"checkout:{session.id}",
        )
        return APPLIED, account_id

    @staticmethod
    def _top_up_amount(session: CheckoutSessionObject, checkout_type: str) -> Optional[int]:
        """Top-up amount in minor units, or None when the metadata amount is not an integer."""
        if checkout_type == "wallet_topup":
            return session.amount_total or 0

        raw = session.metadata.get("wallet_topup_minor", "").strip()
        if not raw:
            if checkout_type == "first_login_wallet":
                return session.amount_total or 0
            return 0
        if not raw.isdigit():
            return None
        return int(raw)
