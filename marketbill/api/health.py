"""
Health endpoints.

Lightweight liveness and readiness checks without exposing secrets.
"""

import logging
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from marketbill.core.database import check_connection, get_engine

logger = logging.getLogger("marketbill")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["plans", "payments", "subscriptions", "featured_listings"]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})

    try:
        present = set(inspect(get_engine()).get_table_names())
    except Exception as e:
        logger.warning("readyz.inspect_failed", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True})

    missing = [t for t in REQUIRED_TABLES if t not in present]
    if missing:
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True, "missing_tables": missing})
    return {"status": "ready", "db": True}
