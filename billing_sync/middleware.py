"""FastAPI middleware for request logging and log correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from billing_sync.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SIGNATURE_HEADER = "Payment-Signature"

# Path segments followed by a customer ID
_CUSTOMER_SEGMENTS = ("subscription", "reconcile")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with a correlation ID.

    The caller's X-Request-ID is reused when present and echoed back on the
    response. Webhook calls log whether a signature was sent, never its value.
    4xx responses log at warning level; unhandled exceptions at error level.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """Initialize middleware.

        Args:
            app: ASGI application
            include_request_details: Also log client host, user agent and body size
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    def _request_fields(self, request: Request) -> dict:
        fields = {"method": request.method, "path": request.url.path}
        if self.include_request_details:
            fields["client_host"] = request.client.host if request.client else "unknown"
            fields["user_agent"] = request.headers.get("user-agent")
            fields["content_length"] = request.headers.get("content-length")
        if request.url.path.startswith("/webhooks/"):
            fields["signed"] = SIGNATURE_HEADER.lower() in request.headers
        return fields

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        bind_context(request_id=request_id)
        logger.info("request_started", **self._request_fields(request))
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            log = logger.warning if 400 <= response.status_code < 500 else logger.info
            log(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the customer ID from /subscription/{id} and /reconcile/{id} paths."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = request.url.path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] in _CUSTOMER_SEGMENTS and parts[1]:
            bind_context(customer_id=parts[1])

        return await call_next(request)
