from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from meterbill.config import Settings, settings as default_settings
from meterbill.core.database import close_db, get_engine, init_db
from meterbill.core.errors import MeterBillError, registered_codes
from meterbill.core.errors.middleware import meterbill_error_handler
from meterbill.core.errors.registry import error_registry
from meterbill.core.log_middleware import CorrelationMiddleware
from meterbill.core.retry import RetryPolicy
from meterbill.core.structured_logging import APP_VERSION, setup_logging
from meterbill.routers import billing_jobs, webhooks
from meterbill.services.batch_scheduler import BatchScheduler
from meterbill.services.billing_closer import BillingCloser
from meterbill.services.billing_store import BillingStore
from meterbill.services.dunning import DunningService
from meterbill.services.invoice_adapter import InvoiceAdapter
from meterbill.services.payment_reconciler import PaymentReconciler
from meterbill.services.subscription_sync import SubscriptionSync
from meterbill.services.usage_aggregator import UsageAggregator
from meterbill.services.wallet_ledger import WalletLedger

# Initialize structured logging before any logger calls
setup_logging(log_dir=default_settings.log_dir, log_file=default_settings.log_file)

logger = logging.getLogger(__name__)

API_TITLE = "meterbill API"


@dataclass
class Services:
    """Billing components wired for one process."""
    settings: Settings
    store: BillingStore
    aggregator: UsageAggregator
    ledger: WalletLedger
    invoices: InvoiceAdapter
    closer: BillingCloser
    scheduler: BatchScheduler
    dunning: DunningService
    reconciler: PaymentReconciler
    subscriptions: SubscriptionSync


def build_services(settings: Settings, engine: Engine, invoice_client=None) -> Services:
    """Wire every component from one Settings object and one engine."""
    store = BillingStore(engine)
    aggregator = UsageAggregator(store)
    ledger = WalletLedger(store, RetryPolicy(max_attempts=settings.ledger_max_attempts))
    invoices = InvoiceAdapter(settings, client=invoice_client)
    closer = BillingCloser(store, aggregator, ledger, invoices)
    scheduler = BatchScheduler(
        store,
        closer,
        test_mode_sample_size=settings.test_mode_sample_size,
        inter_account_delay_s=settings.batch_inter_account_delay_s,
        max_concurrency=settings.batch_max_concurrency,
    )
    dunning = DunningService(
        store,
        grace_period_days=settings.grace_period_days,
        past_due_suspension_days=settings.past_due_suspension_days,
    )
    reconciler = PaymentReconciler(store, ledger, dunning, settings)
    subscriptions = SubscriptionSync(
        store, ledger, invoices, wallet_cap_minor=settings.subscription_wallet_cap_minor,
    )
    return Services(
        settings=settings,
        store=store,
        aggregator=aggregator,
        ledger=ledger,
        invoices=invoices,
        closer=closer,
        scheduler=scheduler,
        dunning=dunning,
        reconciler=reconciler,
        subscriptions=subscriptions,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info(
        "Starting %s v%s (%s)...",
        API_TITLE, APP_VERSION, app.state.settings.environment,
    )
    error_registry.load()
    missing = error_registry.unregistered(registered_codes())
    if missing:
        logger.error("Error codes without a registry entry: %s", ", ".join(missing))
    if app.state.run_migrations:
        init_db()

    yield

    await app.state.services.invoices.aclose()
    if app.state.run_migrations:
        close_db()
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    invoice_client=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Tests pass their own settings/engine; the process default uses the
    module-level settings and the shared engine (migrated at startup).
    """
    settings = settings or default_settings

    app = FastAPI(
        title=API_TITLE,
        version=APP_VERSION,
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.run_migrations = engine is None
    app.state.services = build_services(settings, engine or get_engine(), invoice_client)

    # request_id + correlation_id in every log
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(MeterBillError, meterbill_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(billing_jobs.router, tags=["billing"])
    app.include_router(webhooks.router, tags=["webhooks"])

    @app.get("/api/health", tags=["health"])
    async def health():
        return {"name": API_TITLE, "version": APP_VERSION, "status": "running"}

    return app


# Create the app instance
app = create_app()
