"""
Dunning — grace periods after failed payments and past-due suspension.

A failed invoice payment opens a grace window (``grace_period_days``). A
paid invoice closes it and lifts any suspension. ``process_past_due()`` is
the periodic sweep: accounts whose grace ended more than
``past_due_suspension_days`` ago are suspended and audited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from meterbill.models.billing import BillingAccount, to_naive_utc, utc_now
from meterbill.services.billing_store import BillingStore

logger = logging.getLogger(__name__)


@dataclass
class PastDueReport:
    checked_at: datetime
    cutoff: datetime
    suspended: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checkedAt": self.checked_at.isoformat(),
            "cutoff": self.cutoff.isoformat(),
            "suspendedCount": len(self.suspended),
            "suspended": self.suspended,
        }


class DunningService:

    def __init__(
        self,
        store: BillingStore,
        grace_period_days: int = 7,
        past_due_suspension_days: int = 10,
    ) -> None:
        self.store = store
        self.grace_period = timedelta(days=grace_period_days)
        self.suspension_after = timedelta(days=past_due_suspension_days)

    def enter_grace(self, account_id: str, start: Optional[datetime] = None) -> datetime:
        """Open (or move) the grace window starting at *start*. Returns grace_until."""
        start = to_naive_utc(start) if start is not None else utc_now()
        grace_until = start + self.grace_period
        self.store.update_account(account_id, grace_until=grace_until)
        logger.info("Account %s in grace period until %s", account_id, grace_until)
        return grace_until

    def clear_grace(self, account_id: str) -> None:
        self.store.update_account(account_id, grace_until=None, suspended_at=None)
        logger.info("Grace period cleared for %s", account_id)

    @staticmethod
    def is_in_grace_period(account: BillingAccount, now: Optional[datetime] = None) -> bool:
        if account.grace_until is None:
            return False
        now = to_naive_utc(now) if now is not None else utc_now()
        return now < account.grace_until

    def process_past_due(self, now: Optional[datetime] = None) -> PastDueReport:
        now = to_naive_utc(now) if now is not None else utc_now()
        cutoff = now - self.suspension_after
        report = PastDueReport(checked_at=now, cutoff=cutoff)

        for account in self.store.list_past_due(cutoff):
            self.store.update_account(account.account_id, suspended_at=now)
            self.store.add_audit_log(
                "account_suspended",
                account.account_id,
                {
                    "reason": "past_due",
                    "grace_until": account.grace_until.isoformat(),
                    "suspended_at": now.isoformat(),
                },
            )
            report.suspended.append(account.account_id)
            logger.warning(
                "Suspended past-due account %s (grace ended %s)",
                account.account_id, account.grace_until,
            )

        logger.info("Past-due sweep: %d account(s) suspended", len(report.suspended))
        return report
