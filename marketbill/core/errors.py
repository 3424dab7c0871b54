"""Error taxonomy and FastAPI handlers for the billing engine."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from marketbill.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def extra_payload(self) -> Dict[str, Any]:
        return {}


class ValidationError(AppError, ValueError):
    """Bad role, plan or enum value. User-correctable."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class EligibilityError(AppError):
    """Caller may not hold or use the entitlement (missing role, unverified, suspended, ...)."""
    code = "not_eligible"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class QuotaExceededError(ConflictError):
    code = "quota_exceeded"


class PaymentRequiredError(AppError):
    """Raised when a paid plan is activated outside the payment flow."""
    code = "payment_required"
    status_code = 402

    def extra_payload(self) -> Dict[str, Any]:
        return {"requiresPayment": True}


class ExternalProcessorError(AppError):
    """Payment processor timed out or rejected the request. Retryable by the client."""
    code = "payment_processor_error"
    status_code = 502


class SignatureError(AppError):
    """Webhook authenticity check failed. Nothing was processed."""
    code = "invalid_signature"
    status_code = 400


_HTTP_CODES = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}

logger = logging.getLogger("marketbill.errors")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    The one error shape every endpoint returns:
    {"error": {"code", "message", "request_id"}, "detail": message, ...extra}
    """
    rid = _request_id(request)
    payload: Dict[str, Any] = {
        "error": {"code": code, "message": message, "request_id": rid},
        "detail": message,
    }
    if extra:
        payload.update(extra)
    return JSONResponse(status_code=status_code, content=payload, headers={**(headers or {}), "x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    if exc.request_id:
        request.state.request_id = exc.request_id
    # Processor trouble and unconfigured billing are ours; denials are the caller's
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "app.error",
        extra={"error_code": exc.code, "status": exc.status_code, "path": request.url.path, "error_message": exc.message},
    )
    return error_response(request, exc.status_code, exc.code, exc.message, exc.extra_payload())


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    logger.info("http.error", extra={"error_code": code, "status": exc.status_code, "path": request.url.path})
    return error_response(request, exc.status_code, code, message, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed or missing body/query fields are a 400 like any other bad input."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query"))
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    message = "; ".join(problems) or "Invalid request"
    logger.info("validation.error", extra={"error_code": "validation_error", "path": request.url.path})
    return error_response(request, 400, ValidationError.code, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error", "path": request.url.path})
    return error_response(request, 500, "internal_error", "Unexpected error")
