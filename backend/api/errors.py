"""
HTTP error mapping.

Every error body carries "success": false. Upstream detail is logged,
and only shown to callers outside production.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.rate_limit import RateLimitExceeded
from entitlements.gate import EntitlementError, ServiceNotPurchasedError
from payments.webhooks import VerifierError

logger = structlog.get_logger().bind(component="errors")


class ApiError(Exception):
    """An error response with the route's own body shape."""

    def __init__(self, status_code: int, message: Optional[str] = None, error: Optional[str] = None, **extra: Any):
        super().__init__(message or error or "")
        self.status_code = status_code
        self.body: Dict[str, Any] = {"success": False}
        if error is not None:
            self.body["error"] = error
        if message is not None:
            self.body["message"] = message
        self.body.update(extra)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request data"
    first = errors[0]
    message = str(first.get("msg") or "Invalid request data")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    if first.get("type") == "missing" and field:
        return f"Missing required field: {field}"
    return message


def register_exception_handlers(app: FastAPI, production: bool) -> None:

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": exc.message},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ServiceNotPurchasedError)
    async def service_gate_handler(request: Request, exc: ServiceNotPurchasedError):
        return JSONResponse(
            status_code=403,
            content={"success": False, "message": exc.message, "requiredService": exc.required_service},
        )

    @app.exception_handler(EntitlementError)
    async def entitlement_handler(request: Request, exc: EntitlementError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    @app.exception_handler(VerifierError)
    async def verifier_handler(request: Request, exc: VerifierError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Validation failed", "message": _validation_message(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and request.url.path.startswith("/api/"):
            return JSONResponse(status_code=404, content={"success": False, "error": "API endpoint not found"})
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "An unexpected error occurred" if production else str(exc),
                "message": "An unexpected error occurred. Please try again.",
            },
        )
