import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from marketbill.core.logging import request_id_ctx_var, latency_bucket_ms

REQUEST_ID_HEADER = "x-request-id"

# Caller-supplied ids are echoed into logs and responses; keep them boring
_ACCEPTABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{8,64}$")

logger = logging.getLogger("marketbill.http")


def _incoming_request_id(request: Request) -> str:
    supplied = request.headers.get(REQUEST_ID_HEADER, "").strip()
    return supplied if _ACCEPTABLE_ID.match(supplied) else str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlates everything logged while serving a request.

    Reuses a well-formed caller x-request-id, otherwise mints one, echoes it on
    the response and logs request.complete. Webhook deliveries and admin calls
    are tagged so they can be filtered apart from seller traffic.
    """

    async def dispatch(self, request: Request, call_next):
        rid = _incoming_request_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        latency_ms = (time.perf_counter() - start) * 1000

        response.headers[REQUEST_ID_HEADER] = rid

        path = request.url.path
        if path.startswith("/api/webhooks/"):
            surface = "webhook"
        elif path.startswith("/api/admin/"):
            surface = "admin"
        else:
            surface = "seller"

        status = response.status_code
        logger.log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "surface": surface,
                "latency_bucket": latency_bucket_ms(latency_ms),
            },
        )
        return response
