"""
Usage Aggregator Tests
======================

Coverage:
  - Half-open [start, end) vs inclusive [start, end] windows
  - Plan-included usage excluded from cost and billable seconds
  - Integer half-up average rate
  - record_usage() cost rounding and period_spent increments
"""

from datetime import datetime

import pytest

from meterbill.core.errors import AccountNotFound
from meterbill.models.billing import UsageDirection
from meterbill.services.usage_aggregator import UsageAggregator, UsageSummary, usage_cost_minor


@pytest.fixture
def aggregator(store):
    return UsageAggregator(store)


class TestSummarize:

    def test_empty_period_is_all_zero(self, aggregator, make_account, march):
        make_account("acct_1")
        summary = aggregator.summarize("acct_1", *march)
        assert summary == UsageSummary()
        assert summary.total_minutes == 0
        assert summary.has_charges is False

    def test_sums_cost_and_seconds(self, aggregator, make_account, add_usage, march):
        make_account("acct_1")
        add_usage("acct_1", seconds=120, rate_minor=10, created_at=datetime(2026, 3, 2))
        add_usage("acct_1", seconds=60, rate_minor=10, created_at=datetime(2026, 3, 20))

        summary = aggregator.summarize("acct_1", *march)

        assert summary.total_cost_minor == 30
        assert summary.total_seconds == 180
        assert summary.total_minutes == 3
        assert summary.avg_rate_minor == 10
        assert summary.record_count == 2

    def test_end_boundary_excluded_by_default(self, aggregator, make_account, add_usage, march):
        make_account("acct_1")
        add_usage("acct_1", seconds=60, rate_minor=10, created_at=datetime(2026, 3, 1))
        add_usage("acct_1", seconds=60, rate_minor=10, created_at=datetime(2026, 4, 1))

        assert aggregator.summarize("acct_1", *march).total_cost_minor == 10
        assert aggregator.summarize("acct_1", *march, inclusive_end=True).total_cost_minor == 20

    def test_other_accounts_not_counted(self, aggregator, make_account, add_usage, march):
        make_account("acct_1")
        make_account("acct_2")
        add_usage("acct_2", seconds=600, rate_minor=10, created_at=datetime(2026, 3, 5))
        assert aggregator.summarize("acct_1", *march).record_count == 0

    def test_plan_included_usage_reported_separately(self, aggregator, make_account, add_usage, march):
        make_account("acct_1")
        add_usage("acct_1", seconds=60, rate_minor=20, created_at=datetime(2026, 3, 3))
        add_usage("acct_1", seconds=900, rate_minor=20, created_at=datetime(2026, 3, 4), plan_included=True)

        summary = aggregator.summarize("acct_1", *march)

        assert summary.total_cost_minor == 20
        assert summary.total_seconds == 60
        assert summary.included_seconds == 900
        assert summary.record_count == 2
        assert summary.avg_rate_minor == 20

    def test_average_rate_rounds_half_up(self, aggregator, make_account, add_usage, march):
        make_account("acct_1")
        # 90s @ 7/min = 10.5 → 11; 11 / 1.5 min = 7.33 → 7
        add_usage("acct_1", seconds=90, rate_minor=7, created_at=datetime(2026, 3, 9))
        summary = aggregator.summarize("acct_1", *march)
        assert summary.total_cost_minor == 11
        assert summary.avg_rate_minor == 7

    def test_as_dict_rounds_minutes(self):
        summary = UsageSummary(total_cost_minor=5, total_seconds=100, avg_rate_minor=3, record_count=1)
        assert summary.as_dict()["total_minutes"] == 1.67


class TestRecordUsage:

    def test_cost_rounding(self):
        assert usage_cost_minor(125, 12) == 25
        assert usage_cost_minor(30, 5) == 3  # 2.5 rounds up
        assert usage_cost_minor(29, 5) == 2
        assert usage_cost_minor(0, 50) == 0

    def test_records_and_increments_period_spent(self, aggregator, store, make_account):
        make_account("acct_1")

        first = aggregator.record_usage("acct_1", 125, UsageDirection.OUTBOUND, rate_minor=12)
        aggregator.record_usage("acct_1", 30, rate_minor=5)

        assert first.cost_minor == 25
        assert first.direction == "outbound"
        assert store.get_account("acct_1").period_spent_minor == 28

    def test_plan_included_costs_nothing(self, aggregator, store, make_account):
        make_account("acct_1")
        record = aggregator.record_usage("acct_1", 600, rate_minor=12, plan_included=True)
        assert record.cost_minor == 0
        assert store.get_account("acct_1").period_spent_minor == 0

    def test_explicit_timestamp_is_kept(self, aggregator, make_account, march):
        make_account("acct_1")
        aggregator.record_usage("acct_1", 60, rate_minor=10, created_at=datetime(2026, 3, 15))
        assert aggregator.summarize("acct_1", *march).total_cost_minor == 10

    def test_unknown_account(self, aggregator):
        with pytest.raises(AccountNotFound):
            aggregator.record_usage("missing", 60, rate_minor=10)

    def test_negative_values_rejected(self, aggregator, make_account):
        make_account("acct_1")
        with pytest.raises(ValueError):
            aggregator.record_usage("acct_1", -1, rate_minor=10)
        with pytest.raises(ValueError):
            aggregator.record_usage("acct_1", 10, rate_minor=-3)
