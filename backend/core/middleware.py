"""HTTP middleware and exception handlers.

Every response carries ``X-Request-ID`` (taken from the request when the
caller sent one) and ``X-Process-Time``. The request id is bound into the
structlog context, so log lines written while the request is handled,
including engine lines for runs it starts, can be joined back to it.
"""

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import AutomationError, GraphParseError, ValidationError

logger = logging.getLogger(__name__)

QUIET_PATH_PREFIX = "/api/health"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Request id, timing, security headers and one access log line."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        settings = get_settings()
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"{request.method} {request.url.path} raised {type(exc).__name__}: {exc}",
                exc_info=True,
            )
            detail = "Internal server error" if settings.is_production else (str(exc) or "Internal server error")
            response = JSONResponse(status_code=500, content={"detail": detail, "request_id": request_id})

        elapsed_ms = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}ms"
        response.headers.update(SECURITY_HEADERS)
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if not request.url.path.startswith(QUIET_PATH_PREFIX):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)",
            )
        return response


def _error_body(request: Request, exc: AutomationError) -> dict:
    body = {"detail": exc.message, "request_id": _request_id(request)}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    elif isinstance(exc, GraphParseError):
        body["errors"] = [{"code": "invalid_graph", "message": problem} for problem in exc.problems]
    return body


def setup_exception_handlers(app: FastAPI) -> None:
    """Map ``AutomationError`` subclasses to their ``status_code``.

    Validation failures also carry the structured ``errors`` list so an
    editor can highlight every offending node at once.
    """

    @app.exception_handler(AutomationError)
    async def automation_error_handler(request: Request, exc: AutomationError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "request_id": _request_id(request)})
