"""
Dunning Tests
=============

Grace windows after failed payments and the past-due suspension sweep.
"""

from datetime import datetime

import pytest

from meterbill.services.dunning import DunningService


@pytest.fixture
def dunning(store):
    return DunningService(store, grace_period_days=7, past_due_suspension_days=10)


class TestGrace:

    def test_enter_grace(self, dunning, store, make_account):
        make_account("acct_1")

        grace_until = dunning.enter_grace("acct_1", datetime(2026, 4, 2, 12))

        assert grace_until == datetime(2026, 4, 9, 12)
        account = store.get_account("acct_1")
        assert account.grace_until == grace_until
        assert dunning.is_in_grace_period(account, now=datetime(2026, 4, 5)) is True
        assert dunning.is_in_grace_period(account, now=datetime(2026, 4, 10)) is False

    def test_no_grace_when_never_failed(self, dunning, make_account):
        assert dunning.is_in_grace_period(make_account("acct_1")) is False

    def test_clear_grace_lifts_suspension(self, dunning, store, make_account):
        make_account("acct_1", grace_until=datetime(2026, 4, 9), suspended_at=datetime(2026, 4, 20))

        dunning.clear_grace("acct_1")

        account = store.get_account("acct_1")
        assert account.grace_until is None
        assert account.suspended_at is None


class TestPastDue:

    def test_suspends_only_accounts_past_cutoff(self, dunning, store, make_account):
        now = datetime(2026, 5, 1)
        make_account("acct_old", grace_until=datetime(2026, 4, 1))
        make_account("acct_recent", grace_until=datetime(2026, 4, 25))
        make_account("acct_clean")
        make_account("acct_done", grace_until=datetime(2026, 3, 1), suspended_at=datetime(2026, 3, 20))
        make_account("acct_closed", grace_until=datetime(2026, 3, 1), is_active=False)

        report = dunning.process_past_due(now=now)

        assert report.cutoff == datetime(2026, 4, 21)
        assert report.suspended == ["acct_old"]
        assert store.get_account("acct_old").suspended_at == now
        assert store.get_account("acct_recent").suspended_at is None
        assert store.get_account("acct_done").suspended_at == datetime(2026, 3, 20)

        (audit,) = store.list_audit_logs("account_suspended")
        assert audit.account_id == "acct_old"
        assert audit.details["reason"] == "past_due"

    def test_sweep_is_repeatable(self, dunning, make_account):
        make_account("acct_old", grace_until=datetime(2026, 4, 1))
        dunning.process_past_due(now=datetime(2026, 5, 1))

        again = dunning.process_past_due(now=datetime(2026, 5, 2))

        assert again.suspended == []
        assert again.as_dict()["suspendedCount"] == 0
