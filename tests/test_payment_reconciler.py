"""
Payment Reconciler Tests
========================

Coverage:
  - Signature failures write nothing
  - invoice.* upsert, wallet credit from lines, status monotonicity
  - Duplicate and out-of-order deliveries
  - Dunning: payment_failed opens grace (audited), paid clears it, also when
    the close recorded the status first
  - Account resolution: metadata → customer → subscription → unresolved
  - Subscription updated / deleted
  - Checkout wallet top-ups (idempotent per session), unusable amounts
  - Unlimited upgrade checkout hands its subscription over for sync
"""

import calendar
import json
import time
from datetime import datetime

import pytest
from pydantic import ValidationError

from meterbill.core.errors import InvalidSignature
from meterbill.models.billing import Invoice, InvoiceStatus, PlanType, TransactionKind


def epoch(dt: datetime) -> int:
    return calendar.timegm(dt.timetuple())


def _body(event) -> bytes:
    return json.dumps(event).encode()


def invoice_event(event_id, event_type, invoice_id="in_1", customer="cus_acct_1",
                  metadata=None, lines=None, amount_due=1500, created=None, **invoice_fields):
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "amount_due": amount_due,
        "hosted_invoice_url": f"https://invoice.example/{invoice_id}",
        "metadata": metadata if metadata is not None else {
            "period_start": "2026-03-01T00:00:00",
            "period_end": "2026-04-01T00:00:00",
        },
        "lines": {"data": lines if lines is not None else [
            {"amount": 2500, "description": "Usage: 25.00 min @ $1.00/min"},
            {"amount": -1000, "description": "Wallet credit applied", "metadata": {"wallet_credit": "true"}},
        ]},
        **invoice_fields,
    }
    return {
        "id": event_id,
        "type": event_type,
        "created": created if created is not None else epoch(datetime(2026, 4, 1, 6)),
        "data": {"object": invoice},
    }


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def deliver(reconciler, sign):
    def _deliver(event):
        payload = _body(event)
        return reconciler.handle(payload, sign(payload)["Stripe-Signature"])
    return _deliver


class TestSignature:

    def test_bad_signature_writes_nothing(self, reconciler, sign, store, make_account):
        make_account("acct_1")
        payload = _body(invoice_event("evt_1", "invoice.paid"))

        with pytest.raises(InvalidSignature):
            reconciler.handle(payload, sign(payload, secret="whsec_wrong")["Stripe-Signature"])

        assert store.has_event("evt_1") is False
        assert store.list_invoices("acct_1") == []

    def test_missing_header(self, reconciler):
        with pytest.raises(InvalidSignature):
            reconciler.handle(b"{}", None)

    def test_stale_timestamp(self, reconciler, sign):
        payload = _body(invoice_event("evt_1", "invoice.paid"))
        header = sign(payload, timestamp=int(time.time()) - 3600)["Stripe-Signature"]
        with pytest.raises(InvalidSignature):
            reconciler.handle(payload, header)

    def test_non_object_body(self, reconciler, sign):
        payload = b"[]"
        with pytest.raises(ValueError):
            reconciler.handle(payload, sign(payload)["Stripe-Signature"])

    def test_event_without_id(self, reconciler, sign):
        payload = _body({"type": "invoice.paid", "data": {}})
        with pytest.raises(ValidationError):
            reconciler.handle(payload, sign(payload)["Stripe-Signature"])


class TestInvoiceEvents:

    def test_paid_creates_invoice_with_wallet_from_lines(self, deliver, store, make_account, march):
        make_account("acct_1")

        result = deliver(invoice_event("evt_1", "invoice.paid"))

        assert result.outcome == "applied"
        assert result.account_id == "acct_1"
        invoice = store.find_invoice_by_external_ref("in_1")
        assert invoice.status == InvoiceStatus.PAID.value
        assert (invoice.period_start, invoice.period_end) == march
        assert invoice.wallet_applied_minor == 1000
        assert invoice.total_charged_minor == 1500
        assert invoice.subtotal_minor == 2500
        assert invoice.hosted_url == "https://invoice.example/in_1"
        assert invoice.invoice_metadata["source"] == "webhook"

    def test_finalized_resets_period_spent(self, deliver, store, make_account):
        make_account("acct_1", period_spent_minor=900)

        deliver(invoice_event("evt_1", "invoice.finalized"))

        assert store.get_account("acct_1").period_spent_minor == 0
        assert store.find_invoice_by_external_ref("in_1").status == InvoiceStatus.FINALIZED.value

    def test_advances_invoice_recorded_by_close(self, deliver, store, make_account, march):
        make_account("acct_1")
        store.insert_invoice(Invoice(
            account_id="acct_1",
            period_start=march[0],
            period_end=march[1],
            subtotal_minor=2500,
            wallet_applied_minor=1000,
            total_charged_minor=1500,
            status=InvoiceStatus.FINALIZED.value,
            external_invoice_ref="in_1",
        ))

        deliver(invoice_event("evt_1", "invoice.paid", amount_due=9999))

        (invoice,) = store.list_invoices("acct_1")
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.total_charged_minor == 1500

    def test_period_from_epoch_fields_without_metadata(self, deliver, store, make_account, march):
        make_account("acct_1")

        deliver(invoice_event(
            "evt_1", "invoice.finalized", metadata={},
            period_start=epoch(march[0]), period_end=epoch(march[1]),
        ))

        invoice = store.find_invoice_by_external_ref("in_1")
        assert (invoice.period_start, invoice.period_end) == march

    def test_duplicate_event_applied_once(self, deliver, store, make_account):
        make_account("acct_1")
        event = invoice_event("evt_1", "invoice.paid")

        first = deliver(event)
        second = deliver(event)

        assert first.outcome == "applied"
        assert second.outcome == "duplicate"
        assert len(store.list_invoices("acct_1")) == 1
        assert len(store.list_audit_logs("payment_webhook")) == 1

    def test_finalized_after_paid_is_stale(self, deliver, store, make_account):
        make_account("acct_1")
        deliver(invoice_event("evt_2", "invoice.paid"))
        store.update_account("acct_1", period_spent_minor=300)

        result = deliver(invoice_event("evt_1", "invoice.finalized"))

        assert result.outcome == "stale"
        assert store.find_invoice_by_external_ref("in_1").status == InvoiceStatus.PAID.value
        assert store.get_account("acct_1").period_spent_minor == 300

    def test_failed_after_paid_is_stale(self, deliver, store, make_account):
        make_account("acct_1")
        deliver(invoice_event("evt_2", "invoice.paid"))

        result = deliver(invoice_event("evt_1", "invoice.payment_failed"))

        assert result.outcome == "stale"
        assert store.get_account("acct_1").grace_until is None


class TestDunningFlow:

    def test_failed_then_paid(self, deliver, store, make_account):
        make_account("acct_1")
        failed_at = datetime(2026, 4, 2, 9, 0)

        deliver(invoice_event("evt_1", "invoice.payment_failed", created=epoch(failed_at)))

        account = store.get_account("acct_1")
        assert account.grace_until == datetime(2026, 4, 9, 9, 0)
        (audit,) = store.list_audit_logs("payment_failed")
        assert audit.account_id == "acct_1"
        assert audit.details["invoice_ref"] == "in_1"
        assert audit.details["amount_due_minor"] == 1500
        assert store.find_invoice_by_external_ref("in_1").status == InvoiceStatus.FAILED.value

        store.update_account("acct_1", suspended_at=datetime(2026, 4, 20))
        deliver(invoice_event("evt_2", "invoice.paid"))

        account = store.get_account("acct_1")
        assert account.grace_until is None
        assert account.suspended_at is None
        assert store.find_invoice_by_external_ref("in_1").status == InvoiceStatus.PAID.value

    def test_paid_clears_grace_when_close_recorded_paid(self, deliver, store, make_account, march):
        make_account("acct_1", grace_until=datetime(2026, 4, 5), suspended_at=datetime(2026, 4, 6))
        store.insert_invoice(Invoice(
            account_id="acct_1",
            period_start=march[0],
            period_end=march[1],
            subtotal_minor=2500,
            wallet_applied_minor=1000,
            total_charged_minor=1500,
            status=InvoiceStatus.PAID.value,
            external_invoice_ref="in_1",
        ))

        result = deliver(invoice_event("evt_1", "invoice.paid"))

        assert result.outcome == "applied"
        account = store.get_account("acct_1")
        assert account.grace_until is None
        assert account.suspended_at is None

    def test_failure_recorded_first_still_opens_grace(self, deliver, store, make_account, march):
        make_account("acct_1")
        store.insert_invoice(Invoice(
            account_id="acct_1",
            period_start=march[0],
            period_end=march[1],
            subtotal_minor=2500,
            total_charged_minor=2500,
            status=InvoiceStatus.FAILED.value,
            external_invoice_ref="in_1",
        ))

        result = deliver(invoice_event("evt_1", "invoice.payment_failed",
                                       created=epoch(datetime(2026, 4, 2, 9, 0))))

        assert result.outcome == "applied"
        assert store.get_account("acct_1").grace_until == datetime(2026, 4, 9, 9, 0)
        assert store.list_audit_logs("payment_failed") == []

    def test_repeated_failure_keeps_first_deadline(self, deliver, store, make_account):
        make_account("acct_1")
        deliver(invoice_event("evt_1", "invoice.payment_failed", created=epoch(datetime(2026, 4, 2, 9, 0))))

        result = deliver(invoice_event("evt_2", "invoice.payment_failed",
                                       created=epoch(datetime(2026, 4, 4, 9, 0))))

        assert result.outcome == "applied"
        assert store.get_account("acct_1").grace_until == datetime(2026, 4, 9, 9, 0)
        assert len(store.list_audit_logs("payment_failed")) == 1


class TestResolution:

    def test_metadata_account_id_wins(self, deliver, make_account):
        make_account("acct_1")
        make_account("acct_2")
        event = invoice_event(
            "evt_1", "invoice.paid",
            metadata={"account_id": "acct_2", "period_start": "2026-03-01T00:00:00",
                      "period_end": "2026-04-01T00:00:00"},
        )
        assert deliver(event).account_id == "acct_2"

    def test_expanded_customer_object(self, deliver, make_account):
        make_account("acct_1")
        event = invoice_event("evt_1", "invoice.paid", customer={"id": "cus_acct_1", "object": "customer"})
        assert deliver(event).account_id == "acct_1"

    def test_subscription_ref_fallback(self, deliver, make_account):
        make_account("acct_1", external_customer_ref=None, external_subscription_ref="sub_9")
        event = invoice_event("evt_1", "invoice.paid", customer="cus_unknown", subscription="sub_9")
        assert deliver(event).account_id == "acct_1"

    def test_unresolved_is_acknowledged(self, deliver, store):
        result = deliver(invoice_event("evt_1", "invoice.paid", customer="cus_nobody"))

        assert result.outcome == "unresolved"
        assert result.account_id is None
        assert store.has_event("evt_1") is True

    def test_unhandled_type_ignored(self, deliver, store):
        result = deliver({"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
        assert result.outcome == "ignored"
        assert store.has_event("evt_1") is True


def subscription_event(event_id, event_type, subscription):
    return {"id": event_id, "type": event_type, "created": epoch(datetime(2026, 4, 1)),
            "data": {"object": {"object": "subscription", **subscription}}}


class TestSubscriptions:

    def test_updated_then_deleted(self, deliver, store, make_account):
        make_account("acct_1")
        renews = datetime(2026, 5, 1)

        deliver(subscription_event("evt_1", "customer.subscription.updated", {
            "id": "sub_1",
            "customer": "cus_acct_1",
            "status": "active",
            "items": {"data": [{"current_period_end": epoch(renews)}]},
        }))

        account = store.get_account("acct_1")
        assert account.inbound_plan == PlanType.UNLIMITED.value
        assert account.external_subscription_ref == "sub_1"
        assert account.next_payment_at == renews

        deliver(subscription_event("evt_2", "customer.subscription.deleted", {
            "id": "sub_1", "customer": None, "status": "canceled",
        }))

        account = store.get_account("acct_1")
        assert account.inbound_plan == PlanType.PAY_PER_USE.value
        assert account.external_subscription_ref is None
        assert account.next_payment_at is None

    def test_updated_fills_missing_customer_ref(self, deliver, store, make_account):
        make_account("acct_1", external_customer_ref=None)

        deliver(subscription_event("evt_1", "customer.subscription.updated", {
            "id": "sub_1",
            "customer": "cus_new",
            "metadata": {"account_id": "acct_1"},
            "current_period_end": epoch(datetime(2026, 5, 1)),
        }))

        assert store.get_account("acct_1").external_customer_ref == "cus_new"


def checkout_event(event_id, session):
    return {"id": event_id, "type": "checkout.session.completed", "created": epoch(datetime(2026, 4, 1)),
            "data": {"object": {"object": "checkout.session", **session}}}


class TestCheckout:

    def test_wallet_top_up_once_per_session(self, deliver, services, store, make_account):
        make_account("acct_1")
        session = {
            "id": "cs_1",
            "customer": "cus_acct_1",
            "payment_intent": "pi_1",
            "amount_total": 2000,
            "metadata": {"account_id": "acct_1", "type": "wallet_topup"},
        }

        deliver(checkout_event("evt_1", session))
        deliver(checkout_event("evt_2", session))  # redelivered under a new event id

        assert store.get_account("acct_1").wallet_balance_minor == 2000
        (txn,) = services.ledger.history("acct_1")
        assert txn.kind == TransactionKind.TOP_UP.value
        assert txn.external_payment_ref == "pi_1"
        assert txn.idempotency_key == "checkout:cs_1"

    def test_combined_checkout_uses_metadata_amount(self, deliver, store, make_account):
        make_account("acct_1")
        deliver(checkout_event("evt_1", {
            "id": "cs_2",
            "customer": "cus_acct_1",
            "amount_total": 5000,
            "metadata": {"account_id": "acct_1", "type": "first_login_combined", "wallet_topup_minor": 500},
        }))
        assert store.get_account("acct_1").wallet_balance_minor == 500

    def test_subscription_checkout_stores_customer_only(self, deliver, store, make_account):
        make_account("acct_1", external_customer_ref=None)

        result = deliver(checkout_event("evt_1", {
            "id": "cs_3",
            "customer": "cus_new",
            "amount_total": 4900,
            "metadata": {"account_id": "acct_1", "type": "subscription"},
        }))

        assert result.outcome == "ignored"
        account = store.get_account("acct_1")
        assert account.external_customer_ref == "cus_new"
        assert account.wallet_balance_minor == 0

    def test_unusable_metadata_amount_writes_nothing(self, deliver, store, services, make_account):
        make_account("acct_1", external_customer_ref=None)

        result = deliver(checkout_event("evt_1", {
            "id": "cs_4",
            "customer": "cus_new",
            "amount_total": 2500,
            "metadata": {"account_id": "acct_1", "type": "first_login_combined", "wallet_topup_minor": "25.00"},
        }))

        assert result.outcome == "ignored"
        assert store.has_event("evt_1") is True
        account = store.get_account("acct_1")
        assert account.external_customer_ref is None
        assert account.wallet_balance_minor == 0
        assert services.ledger.history("acct_1") == []

    def test_upgrade_checkout_hands_over_subscription(self, deliver, store, make_account):
        make_account("acct_1")

        result = deliver(checkout_event("evt_1", {
            "id": "cs_5",
            "customer": "cus_acct_1",
            "subscription": "sub_1",
            "amount_total": 9900,
            "metadata": {"account_id": "acct_1", "type": "unlimited_upgrade"},
        }))

        assert result.outcome == "applied"
        assert result.subscription_ref == "sub_1"
        assert store.get_account("acct_1").external_subscription_ref == "sub_1"

    def test_top_up_checkout_has_no_subscription_handover(self, deliver, make_account):
        make_account("acct_1")

        result = deliver(checkout_event("evt_1", {
            "id": "cs_6",
            "customer": "cus_acct_1",
            "subscription": "sub_1",
            "amount_total": 2000,
            "metadata": {"account_id": "acct_1", "type": "wallet_topup"},
        }))

        assert result.outcome == "applied"
        assert result.subscription_ref is None
