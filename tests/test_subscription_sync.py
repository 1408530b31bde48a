"""
Subscription Sync Tests
=======================

Coverage:
  - Plan, subscription ref, next payment date and missing customer ref stored
  - Wallet credit (capped) added to the latest invoice and deducted once
  - Repeated sync is a no-op for the wallet
  - No invoice / empty wallet / unknown subscription
"""

import calendar
from datetime import datetime

import pytest

from meterbill.core.errors import AccountNotFound, ExternalInvoiceError
from meterbill.models.billing import PlanType, TransactionKind
from meterbill.services.subscription_sync import subscription_wallet_key

RENEWS = datetime(2026, 5, 1)


@pytest.fixture
def sync(services):
    return services.subscriptions


@pytest.fixture
def subscription(processor):
    processor.subscriptions["sub_1"] = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_sub",
        "status": "active",
        "latest_invoice": "in_sub_1",
        "items": {"data": [{"current_period_end": calendar.timegm(RENEWS.timetuple())}]},
    }
    return processor.subscriptions["sub_1"]


def _credit_lines(processor):
    return [r for r in processor.requests if r["path"].endswith("/add_lines")]


class TestSync:

    @pytest.mark.asyncio
    async def test_applies_capped_wallet_to_first_invoice(self, sync, services, store, processor, make_account, subscription):
        make_account("acct_1")
        services.ledger.apply("acct_1", TransactionKind.TOP_UP, 80000, reason="top-up")

        result = await sync.sync("acct_1", "sub_1")

        assert result.invoice_ref == "in_sub_1"
        assert result.wallet_applied_minor == 50000
        assert result.wallet_shortfall_minor == 0
        assert result.next_payment_at == RENEWS

        (line,) = _credit_lines(processor)
        assert line["path"] == "/v1/invoices/in_sub_1/add_lines"
        assert line["form"]["lines[0][amount]"] == "-50000"
        assert line["idempotency_key"] == subscription_wallet_key("in_sub_1")

        account = store.get_account("acct_1")
        assert account.wallet_balance_minor == 30000
        assert account.inbound_plan == PlanType.UNLIMITED.value
        assert account.external_subscription_ref == "sub_1"
        assert account.next_payment_at == RENEWS

        deduction = services.ledger.history("acct_1")[-1]
        assert deduction.kind == TransactionKind.DEDUCTION.value
        assert deduction.amount_minor == 50000
        assert deduction.external_payment_ref == "in_sub_1"

    @pytest.mark.asyncio
    async def test_second_sync_applies_nothing(self, sync, services, store, processor, make_account, subscription):
        make_account("acct_1")
        services.ledger.apply("acct_1", TransactionKind.TOP_UP, 2000, reason="top-up")
        await sync.sync("acct_1", "sub_1")
        services.ledger.apply("acct_1", TransactionKind.TOP_UP, 700, reason="top-up")

        again = await sync.sync("acct_1", "sub_1")

        assert again.already_applied is True
        assert again.wallet_applied_minor == 2000
        assert len(_credit_lines(processor)) == 1
        assert store.get_account("acct_1").wallet_balance_minor == 700

    @pytest.mark.asyncio
    async def test_fills_missing_customer_ref(self, sync, store, make_account, subscription):
        make_account("acct_1", external_customer_ref=None)

        await sync.sync("acct_1", "sub_1")

        assert store.get_account("acct_1").external_customer_ref == "cus_sub"

    @pytest.mark.asyncio
    async def test_empty_wallet_adds_no_line(self, sync, store, processor, make_account, subscription):
        make_account("acct_1")

        result = await sync.sync("acct_1", "sub_1")

        assert result.wallet_applied_minor == 0
        assert _credit_lines(processor) == []
        assert store.get_account("acct_1").inbound_plan == PlanType.UNLIMITED.value

    @pytest.mark.asyncio
    async def test_no_invoice_yet(self, sync, services, store, processor, make_account, subscription):
        make_account("acct_1")
        services.ledger.apply("acct_1", TransactionKind.TOP_UP, 2000, reason="top-up")
        subscription["latest_invoice"] = None

        result = await sync.sync("acct_1", "sub_1")

        assert result.invoice_ref is None
        assert _credit_lines(processor) == []
        assert store.get_account("acct_1").wallet_balance_minor == 2000

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, sync, store, make_account):
        make_account("acct_1")

        with pytest.raises(ExternalInvoiceError) as exc_info:
            await sync.sync("acct_1", "sub_missing")

        assert "No such subscription" in exc_info.value.processor_message
        assert store.get_account("acct_1").inbound_plan == PlanType.PAY_PER_USE.value

    @pytest.mark.asyncio
    async def test_unknown_account(self, sync, processor, subscription):
        with pytest.raises(AccountNotFound):
            await sync.sync("nobody", "sub_1")
        assert processor.requests == []
