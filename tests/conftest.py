"""
Pytest configuration for meterbill tests.

Environment variables are set before any meterbill import so the
module-level Settings/engine never touch real paths or credentials.
Each test gets its own SQLite database and an in-process fake payment
processor served through httpx.MockTransport.
"""

import json
import os
import tempfile
from datetime import datetime
from urllib.parse import parse_qs

# Must be set before any meterbill imports
_test_data_dir = tempfile.mkdtemp(prefix="meterbill_test_")
os.environ.setdefault("METERBILL_DATABASE_URL", f"sqlite:///{_test_data_dir}/default.db")
os.environ.setdefault("METERBILL_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("METERBILL_ENVIRONMENT", "development")
os.environ.setdefault("METERBILL_BATCH_INTER_ACCOUNT_DELAY_S", "0")

import httpx
import pytest
from sqlmodel import SQLModel

from meterbill.config import Settings
from meterbill.core.database import build_engine
from meterbill.core.errors.registry import error_registry
from meterbill.models.billing import UsageRecord
from meterbill.services.billing_store import BillingStore

# Load error registry so MeterBillError returns correct HTTP status codes
error_registry.load()

TEST_STRIPE_KEY = "sk_test_meterbill"
TEST_WEBHOOK_SECRET = "whsec_test_meterbill"


class FakeProcessor:
    """Minimal Stripe-like invoice API.

    Honors Idempotency-Key like the real API: a repeated key returns the
    first response without creating anything new.
    """

    def __init__(self) -> None:
        self.requests = []
        self.invoices = {}
        self.subscriptions = {}
        self.finalize_status = "open"
        self.reject = None  # (status_code, message) for every request
        self.raise_on_path = None  # (path suffix, exception)
        self.on_finalize = None  # callback(invoice_id), e.g. a webhook racing the close
        self._idempotent = {}
        self._counter = 0

    def _json(self, status_code, body):
        return httpx.Response(status_code, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        key = request.headers.get("Idempotency-Key")
        self.requests.append({
            "method": request.method,
            "path": request.url.path,
            "form": form,
            "idempotency_key": key,
            "authorization": request.headers.get("Authorization"),
        })

        if self.raise_on_path and request.url.path.endswith(self.raise_on_path[0]):
            raise self.raise_on_path[1]
        if self.reject:
            status_code, message = self.reject
            return self._json(status_code, {"error": {"message": message, "type": "card_error"}})
        if key and key in self._idempotent:
            return self._json(200, self._idempotent[key])

        path = request.url.path
        if request.method == "GET" and "/subscriptions/" in path:
            subscription_id = path.rsplit("/", 1)[-1]
            if subscription_id not in self.subscriptions:
                return self._json(404, {"error": {"message": f"No such subscription: '{subscription_id}'"}})
            return self._json(200, self.subscriptions[subscription_id])
        if path.endswith("/invoices"):
            self._counter += 1
            invoice_id = f"in_test_{self._counter}"
            body = {"id": invoice_id, "status": "draft", "customer": form.get("customer"), "lines": []}
            self.invoices[invoice_id] = {"params": form, "lines": [], "status": "draft"}
        elif path.endswith("/add_lines"):
            invoice_id = path.split("/")[-2]
            self.invoices.setdefault(invoice_id, {"params": {}, "lines": [], "status": "draft"})
            self.invoices[invoice_id]["lines"].append(form)
            body = {"id": invoice_id, "status": "draft"}
        elif path.endswith("/finalize"):
            invoice_id = path.split("/")[-2]
            self.invoices[invoice_id]["status"] = self.finalize_status
            if self.on_finalize:
                self.on_finalize(invoice_id)
            body = {
                "id": invoice_id,
                "status": self.finalize_status,
                "hosted_invoice_url": f"https://invoice.example/{invoice_id}",
            }
        else:
            return self._json(404, {"error": {"message": f"Unrecognized request URL ({path})"}})

        if key:
            self._idempotent[key] = body
        return self._json(200, body)

    def paths(self):
        return [r["path"] for r in self.requests]


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path}/billing.db")
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/billing.db",
        stripe_secret_key=TEST_STRIPE_KEY,
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        stripe_api_base="https://processor.test/v1",
        batch_inter_account_delay_s=0,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def store(engine):
    return BillingStore(engine)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def invoice_client(processor):
    return httpx.AsyncClient(transport=httpx.MockTransport(processor.handler))


@pytest.fixture
def services(settings, engine, invoice_client):
    from meterbill.main import build_services

    return build_services(settings, engine, invoice_client=invoice_client)


@pytest.fixture
def make_account(store):
    def _make(account_id="acct_1", **fields):
        fields.setdefault("display_name", f"Tenant {account_id}")
        fields.setdefault("external_customer_ref", f"cus_{account_id}")
        return store.create_account(account_id, **fields)
    return _make


@pytest.fixture
def add_usage(store):
    def _add(account_id, seconds, rate_minor, created_at, plan_included=False):
        cost = 0 if plan_included else (2 * seconds * rate_minor + 60) // 120
        return store.insert_usage(UsageRecord(
            account_id=account_id,
            duration_seconds=seconds,
            rate_at_time_minor=rate_minor,
            cost_minor=cost,
            plan_included=plan_included,
            created_at=created_at,
        ))
    return _add


@pytest.fixture
def march():
    """Closed period [2026-03-01, 2026-04-01)."""
    return datetime(2026, 3, 1), datetime(2026, 4, 1)


def signed_headers(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None):
    import time
    from meterbill.services.webhook_signature import compute_signature

    ts = int(time.time()) if timestamp is None else timestamp
    return {"Stripe-Signature": f"t={ts},v1={compute_signature(payload, ts, secret)}"}


def event_bytes(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
def sign():
    return signed_headers
