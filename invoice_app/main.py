from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoice_app.config import get_settings
from invoice_app.dependencies.services import (
    get_clock,
    get_id_allocator_cached,
    get_unit_of_work_factory,
)
from invoice_app.health import router as health_router
from invoice_app.routes.invoice import router as invoice_router
from invoice_app.services import RecurringInvoiceGenerator
from invoice_app.services.scheduler import PeriodicJob


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler once and apply the configured level."""
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)


configure_logging(get_settings().log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Seeds the invoice id cache and runs the background jobs.
    """
    # --- Startup Logic ---
    settings = get_settings()
    logger.info("Application settings on startup: %s", settings.model_dump())

    allocator = get_id_allocator_cached()
    await allocator.initialize()

    jobs = [
        PeriodicJob(
            "invoice-id-cache-refresh",
            settings.id_cache_refresh_interval,
            allocator.refresh,
        )
    ]
    if settings.recurring_generation_enabled:
        generator = RecurringInvoiceGenerator(
            get_unit_of_work_factory(), allocator, clock=get_clock()
        )
        jobs.append(
            PeriodicJob(
                "recurring-invoice-generation",
                settings.recurring_generation_interval,
                generator.run,
                run_on_start=True,
            )
        )
    for job in jobs:
        job.start()
    app.state.jobs = jobs
    logger.info("Application startup complete.")

    try:
        yield  # The application is now running
    finally:
        # --- Shutdown Logic ---
        for job in jobs:
            await job.stop()
        logger.info("Application shutdown complete.")


# --- Application Setup ---

settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    redirect_slashes=False
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include Routers ---

app.include_router(invoice_router, prefix="/invoices")
app.include_router(health_router)
