import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from meterbill.core.errors import MeterBillError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")
    services = request.app.state.services

    try:
        result = services.reconciler.handle(payload, signature)
    except (ValueError, ValidationError) as exc:
        logger.warning("Rejected malformed webhook body: %s", exc)
        raise HTTPException(status_code=400, detail="Malformed event payload")

    response = {"received": True, "eventId": result.event_id, "outcome": result.outcome}

    # The event is already recorded, so a failure here is logged and acknowledged;
    # the sync job route can be called again for the account
    if result.subscription_ref and result.account_id:
        try:
            synced = await services.subscriptions.sync(result.account_id, result.subscription_ref)
            response["walletAppliedMinor"] = synced.wallet_applied_minor
        except MeterBillError as exc:
            logger.error(
                "Subscription sync after %s failed for %s: %s",
                result.event_id, result.account_id, exc.detail or exc.code,
            )
            response["subscriptionSync"] = "failed"

    return response
