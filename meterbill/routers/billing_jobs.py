"""
Billing Jobs Router
===================

Trigger surface for the scheduler (cron, ops tooling):

    POST /api/billing/jobs/monthly-close          → 200 | 207 (failures) | 500
    POST /api/billing/jobs/manual-billing
    POST /api/billing/jobs/past-due
    POST /api/billing/accounts/{id}/subscription/sync
    GET  /api/billing/accounts/{id}/estimate
    GET  /api/billing/accounts/{id}/ledger/verify

When ``internal_api_key`` is configured every route requires a matching
``X-Internal-API-Key`` header.
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from meterbill.services.batch_scheduler import RunMode

logger = logging.getLogger(__name__)


def require_internal_key(
    request: Request,
    x_internal_api_key: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.internal_api_key
    if not expected:
        return
    if not x_internal_api_key or not hmac.compare_digest(expected, x_internal_api_key):
        logger.warning("Rejected billing job call with missing/invalid internal key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal API key")


router = APIRouter(dependencies=[Depends(require_internal_key)])


def _services(request: Request):
    return request.app.state.services


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class MonthlyCloseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=False, alias="dryRun")
    test_mode: bool = Field(default=False, alias="testMode")
    scheduled_by: str = Field(default="manual", alias="scheduledBy", max_length=100)
    period_start: Optional[datetime] = Field(default=None, alias="periodStart")
    period_end: Optional[datetime] = Field(default=None, alias="periodEnd")

    @model_validator(mode="after")
    def check_period(self):
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("periodStart and periodEnd must be given together")
        if self.period_start and self.period_end and self.period_end <= self.period_start:
            raise ValueError("periodEnd must be after periodStart")
        return self


class ManualBillingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")
    dry_run: bool = Field(default=False, alias="dryRun")

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class SubscriptionSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(..., alias="subscriptionId", min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.post("/api/billing/jobs/monthly-close")
async def monthly_close(body: Optional[MonthlyCloseRequest] = None, services=Depends(_services)):
    """Run the period close for every pay-per-use account."""
    body = body or MonthlyCloseRequest()
    mode = RunMode.from_flags(dry_run=body.dry_run, test_mode=body.test_mode)
    period = (body.period_start, body.period_end) if body.period_start else None

    report = await services.scheduler.run(mode=mode, period=period, scheduled_by=body.scheduled_by)
    return JSONResponse(status_code=report.http_status, content=report.as_dict())


@router.post("/api/billing/jobs/manual-billing")
async def manual_billing(body: ManualBillingRequest, services=Depends(_services)):
    """Bill one account for an explicit, inclusive date range."""
    result = await services.closer.manual_billing(
        body.account_id,
        body.start_date,
        body.end_date,
        dry_run=body.dry_run,
    )
    return {"success": True, "dryRun": body.dry_run, "result": result.as_dict()}


@router.post("/api/billing/jobs/past-due")
async def past_due(services=Depends(_services)):
    """Suspend accounts whose grace period lapsed long enough ago."""
    report = services.dunning.process_past_due()
    return {"success": True, **report.as_dict()}


# ---------------------------------------------------------------------------
# Account views
# ---------------------------------------------------------------------------

@router.get("/api/billing/accounts/{account_id}/estimate")
async def estimate_next_payment(account_id: str, services=Depends(_services)):
    return services.closer.estimate_next_payment(account_id).as_dict()


@router.get("/api/billing/accounts/{account_id}/ledger/verify")
async def verify_ledger(account_id: str, services=Depends(_services)):
    return services.ledger.verify(account_id).as_dict()


@router.post("/api/billing/accounts/{account_id}/subscription/sync")
async def sync_subscription(account_id: str, body: SubscriptionSyncRequest, services=Depends(_services)):
    """Store a new subscription on the account and spend the wallet on its first invoice."""
    result = await services.subscriptions.sync(account_id, body.subscription_id)
    return {"success": True, "result": result.as_dict()}
