"""
Batch Scheduler — monthly close across all pay-per-use accounts
===============================================================

PURPOSE:
    Runs the Billing Closer for every active account that has a
    pay-per-use plan (inbound or outbound) and aggregates the results into
    a RunReport.

MODES:
    live       full close, processor calls and ledger writes
    dry_run    usage + wallet split only, nothing written
    test_mode  like dry_run, limited to ``test_mode_sample_size`` accounts

FAILURE ISOLATION:
    Each account runs in its own failure boundary. An exception becomes a
    ``failures[]`` entry and the run moves on. Only a failure to select the
    accounts at all aborts the run (AccountSelectionFailed → HTTP 500).

    success          no failures                           HTTP 200
    partial_success  failures and processed both non-empty HTTP 207
    all_failed       failures, nothing processed           HTTP 207
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from meterbill.core.errors import AccountSelectionFailed, ExternalInvoiceError, MeterBillError
from meterbill.models.billing import BillingAccount, to_naive_utc, utc_now
from meterbill.services.billing_closer import BillingCloser, CloseOutcome, CloseResult
from meterbill.services.billing_store import BillingStore

logger = logging.getLogger(__name__)

__all__ = ["BatchScheduler", "RunMode", "RunReport", "previous_month_period"]


class RunMode(str, Enum):
    DRY_RUN = "dry_run"
    TEST_MODE = "test_mode"
    LIVE = "live"

    @classmethod
    def from_flags(cls, dry_run: bool = False, test_mode: bool = False) -> "RunMode":
        if test_mode:
            return cls.TEST_MODE
        if dry_run:
            return cls.DRY_RUN
        return cls.LIVE


def previous_month_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """``[first of last month, first of this month)`` in UTC."""
    now = to_naive_utc(now) if now is not None else utc_now()
    end = datetime(now.year, now.month, 1)
    if end.month == 1:
        start = datetime(end.year - 1, 12, 1)
    else:
        start = datetime(end.year, end.month - 1, 1)
    return start, end


def _describe(account: BillingAccount) -> str:
    return account.display_name or account.account_id


@dataclass
class RunReport:
    mode: RunMode
    period_start: datetime
    period_end: datetime
    scheduled_by: str
    run_id: str
    evaluated: int = 0
    processed: int = 0
    invoices_created: int = 0
    wallet_applied_total: int = 0
    charged_total: int = 0
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if not self.failures:
            return "success"
        if self.processed:
            return "partial_success"
        return "all_failed"

    @property
    def http_status(self) -> int:
        return 207 if self.failures else 200

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.failures,
            "outcome": self.outcome,
            "runId": self.run_id,
            "mode": self.mode.value,
            "dryRun": self.mode != RunMode.LIVE,
            "testMode": self.mode == RunMode.TEST_MODE,
            "scheduledBy": self.scheduled_by,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "evaluatedAccounts": self.evaluated,
            "processed": self.processed,
            "invoicesCreated": self.invoices_created,
            "walletAppliedMinor": self.wallet_applied_total,
            "totalChargedMinor": self.charged_total,
            "skipped": self.skipped,
            "failures": self.failures,
            "details": self.details,
        }


class BatchScheduler:

    def __init__(
        self,
        store: BillingStore,
        closer: BillingCloser,
        test_mode_sample_size: int = 5,
        inter_account_delay_s: float = 0.0,
        max_concurrency: int = 1,
    ) -> None:
        self.store = store
        self.closer = closer
        self.test_mode_sample_size = test_mode_sample_size
        self.inter_account_delay_s = inter_account_delay_s
        self.max_concurrency = max(1, max_concurrency)

    def _select_accounts(self, mode: RunMode) -> List[BillingAccount]:
        try:
            accounts = self.store.list_billable_accounts()
        except SQLAlchemyError as exc:
            raise AccountSelectionFailed(detail=str(exc)) from exc

        # One close per account per run
        unique: Dict[str, BillingAccount] = {}
        for account in accounts:
            unique.setdefault(account.account_id, account)
        selected = list(unique.values())

        if mode == RunMode.TEST_MODE:
            selected = selected[: self.test_mode_sample_size]
        return selected

    async def run(
        self,
        mode: RunMode = RunMode.LIVE,
        period: Optional[Tuple[datetime, datetime]] = None,
        scheduled_by: str = "manual",
    ) -> RunReport:
        period_start, period_end = period or previous_month_period()
        period_start, period_end = to_naive_utc(period_start), to_naive_utc(period_end)
        run_id = uuid.uuid4().hex

        with structlog.contextvars.bound_contextvars(run_id=run_id):
            logger.info(
                "Starting billing close run: period=%s..%s mode=%s scheduled_by=%s",
                period_start, period_end, mode.value, scheduled_by,
            )
            accounts = self._select_accounts(mode)
            report = RunReport(
                mode=mode,
                period_start=period_start,
                period_end=period_end,
                scheduled_by=scheduled_by,
                run_id=run_id,
                evaluated=len(accounts),
            )

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def process(index: int, account: BillingAccount):
                async with semaphore:
                    if index and self.inter_account_delay_s:
                        await asyncio.sleep(self.inter_account_delay_s)
                    return await self._close_one(account, mode, period_start, period_end, scheduled_by)

            outcomes = await asyncio.gather(
                *(process(i, account) for i, account in enumerate(accounts))
            )
            for account, outcome in zip(accounts, outcomes):
                self._tally(report, account, outcome)

            logger.info(
                "Billing close run finished: outcome=%s evaluated=%d processed=%d "
                "invoices=%d failures=%d",
                report.outcome, report.evaluated, report.processed,
                report.invoices_created, len(report.failures),
            )
        return report

    async def _close_one(
        self,
        account: BillingAccount,
        mode: RunMode,
        period_start: datetime,
        period_end: datetime,
        scheduled_by: str,
    ):
        """Close one account; exceptions are returned, not raised."""
        with structlog.contextvars.bound_contextvars(account_id=account.account_id):
            try:
                return await self.closer.close(
                    account.account_id,
                    period_start,
                    period_end,
                    dry_run=mode != RunMode.LIVE,
                    scheduled_by=scheduled_by,
                )
            except Exception as exc:
                logger.error("Failed to close %s: %s", _describe(account), exc)
                return exc

    @staticmethod
    def _tally(report: RunReport, account: BillingAccount, outcome) -> None:
        name = _describe(account)
        if isinstance(outcome, Exception):
            if isinstance(outcome, ExternalInvoiceError):
                message = outcome.processor_message
            elif isinstance(outcome, MeterBillError):
                message = outcome.detail or outcome.code
            else:
                message = str(outcome) or type(outcome).__name__
            report.failures.append({
                "account_id": account.account_id,
                "name": name,
                "error": message,
                "code": getattr(outcome, "code", None),
            })
            return

        result: CloseResult = outcome
        if result.outcome == CloseOutcome.SKIPPED_NO_USAGE:
            report.skipped.append({
                "account_id": account.account_id,
                "name": name,
                "reason": "no_usage",
            })
            return

        report.processed += 1
        if result.outcome != CloseOutcome.ALREADY_CLOSED:
            report.wallet_applied_total += result.wallet_applied_minor
        if result.outcome == CloseOutcome.CHARGED:
            report.invoices_created += 1
            report.charged_total += result.to_charge_minor
        elif result.outcome == CloseOutcome.PROJECTED:
            report.charged_total += result.to_charge_minor

        report.details.append({
            "account_id": account.account_id,
            "name": name,
            "outcome": result.outcome.value,
            "usage_minor": result.usage.total_cost_minor,
            "wallet_applied_minor": result.wallet_applied_minor,
            "wallet_shortfall_minor": result.wallet_shortfall_minor,
            "to_charge_minor": result.to_charge_minor,
            "invoice_status": result.invoice_status,
            "external_invoice_ref": result.external_invoice_ref,
        })
