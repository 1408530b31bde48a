"""
Usage Aggregator — billable usage totals per account and period
===============================================================

PURPOSE:
    1. **summarize()** — Sums unbilled usage for one account over a period.
       Period close uses the half-open window ``[start, end)``; manual
       billing passes ``inclusive_end=True`` for ``[start, end]``.
    2. **record_usage()** — Writes one metered usage record and bumps the
       account's running ``period_spent_minor``.

COST CALCULATION:
    cost_minor     = round_half_up(duration_seconds × rate_minor / 60)
    avg_rate_minor = round_half_up(total_cost_minor / total_minutes)
    Plan-included usage (unlimited plans) costs nothing and is reported
    separately as ``included_seconds``; it never counts towards billable
    seconds.

    All arithmetic is integer; no floats touch money.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from meterbill.models.billing import UsageDirection, UsageRecord, to_naive_utc
from meterbill.services.billing_store import BillingStore

logger = logging.getLogger(__name__)

__all__ = [
    "UsageAggregator",
    "UsageSummary",
    "usage_cost_minor",
]


def _div_half_up(numerator: int, denominator: int) -> int:
    """Non-negative integer division rounding .5 up."""
    return (2 * numerator + denominator) // (2 * denominator)


def usage_cost_minor(duration_seconds: int, rate_minor: int) -> int:
    """Cost of *duration_seconds* at *rate_minor* per minute."""
    return _div_half_up(duration_seconds * rate_minor, 60)


@dataclass(frozen=True)
class UsageSummary:
    """Aggregated billable usage for one account and period."""
    total_cost_minor: int = 0
    total_seconds: int = 0
    avg_rate_minor: int = 0
    record_count: int = 0
    included_seconds: int = 0

    @property
    def total_minutes(self) -> float:
        return self.total_seconds / 60

    @property
    def has_charges(self) -> bool:
        return self.total_cost_minor > 0

    def as_dict(self) -> dict:
        return {
            "total_cost_minor": self.total_cost_minor,
            "total_seconds": self.total_seconds,
            "total_minutes": round(self.total_minutes, 2),
            "avg_rate_minor": self.avg_rate_minor,
            "record_count": self.record_count,
            "included_seconds": self.included_seconds,
        }


class UsageAggregator:

    def __init__(self, store: BillingStore) -> None:
        self.store = store

    def summarize(
        self,
        account_id: str,
        period_start: datetime,
        period_end: datetime,
        inclusive_end: bool = False,
    ) -> UsageSummary:
        """Billable usage of *account_id* in the period. Pure read."""
        totals = self.store.usage_totals(
            account_id,
            to_naive_utc(period_start),
            to_naive_utc(period_end),
            inclusive_end=inclusive_end,
        )
        billable = totals.get(False, {"cost": 0, "seconds": 0, "count": 0})
        included = totals.get(True, {"cost": 0, "seconds": 0, "count": 0})

        cost = billable["cost"]
        seconds = billable["seconds"]
        # 60 * cost / seconds == cost per minute
        avg_rate = _div_half_up(60 * cost, seconds) if seconds > 0 else 0

        summary = UsageSummary(
            total_cost_minor=cost,
            total_seconds=seconds,
            avg_rate_minor=avg_rate,
            record_count=billable["count"] + included["count"],
            included_seconds=included["seconds"],
        )
        logger.debug(
            "Usage for %s [%s, %s%s: cost=%d seconds=%d records=%d",
            account_id, period_start, period_end, "]" if inclusive_end else ")",
            summary.total_cost_minor, summary.total_seconds, summary.record_count,
        )
        return summary

    def record_usage(
        self,
        account_id: str,
        duration_seconds: int,
        direction: UsageDirection = UsageDirection.INBOUND,
        rate_minor: int = 0,
        plan_included: bool = False,
        external_ref: str | None = None,
        created_at: datetime | None = None,
    ) -> UsageRecord:
        """Persist one unit of metered work and add its cost to period_spent."""
        if duration_seconds < 0 or rate_minor < 0:
            raise ValueError("duration_seconds and rate_minor must be non-negative")

        # Raises AccountNotFound for unknown tenants
        self.store.get_account(account_id)

        cost = 0 if plan_included else usage_cost_minor(duration_seconds, rate_minor)
        record = UsageRecord(
            account_id=account_id,
            duration_seconds=duration_seconds,
            direction=UsageDirection(direction).value,
            rate_at_time_minor=rate_minor,
            cost_minor=cost,
            plan_included=plan_included,
            external_ref=external_ref,
        )
        if created_at is not None:
            record.created_at = to_naive_utc(created_at)

        record = self.store.insert_usage(record)
        if cost:
            self.store.add_period_spent(account_id, cost)

        logger.info(
            "Recorded usage: account=%s seconds=%d rate=%d cost=%d included=%s",
            account_id, duration_seconds, rate_minor, cost, plan_included,
        )
        return record
