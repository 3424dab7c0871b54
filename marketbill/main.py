import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import after dotenv is loaded
from marketbill.core.config import settings, validate_config
from marketbill.core.logging import configure_logging
from marketbill.core.middleware.request_id import RequestIdMiddleware
from marketbill.core.database import create_all_tables, get_database_url
from marketbill.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from marketbill.api import subscriptions, listings, webhooks, admin_subscriptions, health
from marketbill.features.plans.service import seed_default_plans
from marketbill.features.subscriptions.sweeper import run_sweep

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


async def sweep_forever(interval_seconds: int) -> None:
    """Run the expiration sweep once now, then every interval."""
    logger = logging.getLogger("marketbill.sweeper")
    while True:
        try:
            result = await asyncio.to_thread(run_sweep)
            logger.info(
                "[sweeper] scheduled run",
                extra={"expired_count": result.expired_count, "expiring_count": result.expiring_count, "skipped": result.skipped},
            )
        except Exception:
            logger.error("[sweeper] scheduled run failed", exc_info=True)
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("marketbill")
    logger.info("Starting marketbill...")
    app.state.startup_time = time.time()

    database_url = get_database_url()
    if database_url:
        create_all_tables()
        if settings.SEED_DEFAULT_PLANS:
            seed_default_plans()

    sweep_task = None
    if settings.SWEEP_ENABLED and database_url:
        sweep_task = asyncio.create_task(sweep_forever(settings.SWEEP_INTERVAL_SECONDS))

    try:
        yield
    finally:
        if sweep_task is not None:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass
        logging.getLogger("marketbill").info("Stopping marketbill...")


app = FastAPI(title="marketbill - seller subscriptions", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router, prefix="/api")
app.include_router(listings.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")
app.include_router(admin_subscriptions.router, prefix="/api")
app.include_router(health.root_router)
