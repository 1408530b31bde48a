"""
Invoice Adapter — creates and finalizes processor invoices
==========================================================

PURPOSE:
    Turns one period's charge into an invoice at the payment processor
    (Stripe-compatible REST API, form-encoded, bearer secret key):

        POST /invoices                       → draft, auto_advance, charge_automatically
        POST /invoices/{id}/add_lines        → "Usage: M.MM min @ $R.RR/min"  (+subtotal)
        POST /invoices/{id}/add_lines        → "Wallet credit applied"        (−wallet)
        POST /invoices/{id}/finalize         → open / paid

    plus a subscription read (GET /subscriptions/{id}) and a standalone
    wallet credit line for a subscription's first invoice.

IDEMPOTENCY:
    Every POST carries an ``Idempotency-Key`` derived from the caller's
    prefix (account + period), so a re-triggered close gets the same
    processor invoice back instead of a second one.

FAILURES:
    - non-2xx            → ExternalInvoiceError with the processor's raw message
    - timeout            → ExternalInvoiceError, not retried (request may have landed)
    - connect error      → retried via RetryPolicy (request never left the client)

The httpx client is injectable so tests can use ``httpx.MockTransport``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from meterbill.config import Settings
from meterbill.core.errors import ExternalInvoiceError
from meterbill.core.retry import RetryPolicy
from meterbill.models.billing import InvoiceStatus
from meterbill.models.events import SubscriptionObject
from meterbill.services.usage_aggregator import UsageSummary

logger = logging.getLogger(__name__)

__all__ = [
    "ExternalInvoiceResult",
    "InvoiceAdapter",
    "map_processor_status",
]

_STATUS_MAP = {
    "open": InvoiceStatus.FINALIZED,
    "paid": InvoiceStatus.PAID,
    "uncollectible": InvoiceStatus.FAILED,
    "void": InvoiceStatus.CANCELLED,
}


def map_processor_status(status: Optional[str]) -> InvoiceStatus:
    """Map a processor invoice status onto ours; unknown → draft."""
    return _STATUS_MAP.get((status or "").lower(), InvoiceStatus.DRAFT)


def _is_connect_error(exc: BaseException) -> bool:
    return isinstance(exc, httpx.ConnectError)


def _format_minor(amount_minor: int) -> str:
    return f"{amount_minor // 100}.{amount_minor % 100:02d}"


@dataclass(frozen=True)
class ExternalInvoiceResult:
    """What the processor returned after finalizing."""
    id: str
    status: InvoiceStatus
    hosted_url: Optional[str] = None
    raw_status: Optional[str] = None


class InvoiceAdapter:

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.base_url = settings.stripe_api_base.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.retry_policy = RetryPolicy(
            max_attempts=settings.processor_max_attempts,
            base_delay_s=0.5,
            max_delay_s=5.0,
            jitter_s=0.1,
            is_transient=_is_connect_error,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.settings.processor_timeout_s,
                    connect=self.settings.processor_connect_timeout_s,
                ),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Close the client if we created it. Call during app shutdown."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(
        self,
        path: str,
        data: Dict[str, str],
        idempotency_key: Optional[str],
    ) -> Dict[str, Any]:
        """POST a form body to the processor and return the decoded JSON."""
        return await self._request("POST", path, data, idempotency_key)

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.settings.require_stripe_secret()}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{self.base_url}{path}"
        client = self._get_client()

        async def send() -> httpx.Response:
            if method == "GET":
                return await client.get(url, headers=headers)
            return await client.post(url, data=data or {}, headers=headers)

        try:
            response = await self.retry_policy.run_async(send, description=f"{method} {path}")
        except httpx.TimeoutException as exc:
            logger.error("Timeout calling payment processor %s %s: %s", method, path, exc)
            raise ExternalInvoiceError(
                "payment processor request timed out", status_code=504, context={"path": path}
            )
        except httpx.RequestError as exc:
            logger.error("Connection error to payment processor %s %s: %s", method, path, exc)
            raise ExternalInvoiceError(
                f"cannot reach payment processor: {exc}", status_code=502, context={"path": path}
            )

        if response.status_code >= 300:
            message = response.text
            try:
                message = response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass
            logger.error(
                "Payment processor %s %s returned %d: %s", method, path, response.status_code, message,
            )
            raise ExternalInvoiceError(
                message, status_code=response.status_code, context={"path": path}
            )

        return response.json()

    async def charge(
        self,
        customer_ref: str,
        subtotal_minor: int,
        wallet_applied_minor: int,
        period_start: datetime,
        period_end: datetime,
        usage_summary: UsageSummary,
        metadata: Dict[str, str],
        idempotency_prefix: Optional[str] = None,
    ) -> ExternalInvoiceResult:
        """
        Create, populate and finalize one invoice.

        Raises:
            ValueError: nothing left to charge after the wallet.
            ExternalInvoiceError: the processor rejected or could not be reached.
            ConfigurationError: no processor secret configured.
        """
        if subtotal_minor - wallet_applied_minor <= 0:
            raise ValueError(
                f"nothing to charge: subtotal={subtotal_minor} wallet_applied={wallet_applied_minor}"
            )

        def key(step: str) -> Optional[str]:
            return f"{idempotency_prefix}:{step}" if idempotency_prefix else None

        currency = self.settings.currency
        invoice_params = {
            "customer": customer_ref,
            "auto_advance": "true",
            "collection_method": "charge_automatically",
            "currency": currency,
            "description": (
                f"Usage {period_start.date().isoformat()} - {period_end.date().isoformat()}"
            ),
            "metadata[period_start]": period_start.isoformat(),
            "metadata[period_end]": period_end.isoformat(),
        }
        for name, value in metadata.items():
            invoice_params[f"metadata[{name}]"] = str(value)

        invoice = await self._post("/invoices", invoice_params, key("create"))
        invoice_id = invoice["id"]
        logger.info("Created draft invoice %s for customer %s", invoice_id, customer_ref)

        usage_line = (
            f"Usage: {usage_summary.total_minutes:.2f} min "
            f"@ ${_format_minor(usage_summary.avg_rate_minor)}/min"
        )
        await self._post(
            f"/invoices/{invoice_id}/add_lines",
            {
                "lines[0][description]": usage_line,
                "lines[0][amount]": str(subtotal_minor),
                "lines[0][currency]": currency,
            },
            key("usage-line"),
        )

        if wallet_applied_minor > 0:
            await self._post(
                f"/invoices/{invoice_id}/add_lines",
                {
                    "lines[0][description]": "Wallet credit applied",
                    "lines[0][amount]": str(-wallet_applied_minor),
                    "lines[0][currency]": currency,
                    "lines[0][metadata][wallet_credit]": "true",
                },
                key("wallet-line"),
            )

        finalized = await self._post(f"/invoices/{invoice_id}/finalize", {}, key("finalize"))
        raw_status = finalized.get("status")
        result = ExternalInvoiceResult(
            id=finalized.get("id", invoice_id),
            status=map_processor_status(raw_status),
            hosted_url=finalized.get("hosted_invoice_url"),
            raw_status=raw_status,
        )
        logger.info(
            "Finalized invoice %s: status=%s charged=%d",
            result.id, raw_status, subtotal_minor - wallet_applied_minor,
        )
        return result

    async def get_subscription(self, subscription_ref: str) -> SubscriptionObject:
        """Read a subscription (customer, status, period end, latest invoice)."""
        body = await self._request("GET", f"/subscriptions/{subscription_ref}")
        return SubscriptionObject.model_validate(body)

    async def add_wallet_credit_line(
        self,
        invoice_ref: str,
        amount_minor: int,
        idempotency_key: Optional[str] = None,
    ) -> None:
        """Add a negative "Wallet credit applied" line to an existing invoice."""
        if amount_minor <= 0:
            raise ValueError(f"wallet credit must be positive, got {amount_minor}")
        await self._post(
            f"/invoices/{invoice_ref}/add_lines",
            {
                "lines[0][description]": "Wallet credit applied",
                "lines[0][amount]": str(-amount_minor),
                "lines[0][currency]": self.settings.currency,
                "lines[0][metadata][wallet_credit]": "true",
            },
            idempotency_key,
        )
        logger.info("Applied wallet credit %d to invoice %s", amount_minor, invoice_ref)
