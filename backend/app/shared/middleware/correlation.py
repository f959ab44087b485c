"""
Request Middleware

Provides middleware for:
1. Correlation ID - Assigns a unique ID to each request for log tracing
2. Tenant context - Clears the tenant bound by a previous request on the same task
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.shared.core.logging import set_correlation_id, set_tenant_id

logger = logging.getLogger("request")

REQUEST_ID_HEADER = "X-Request-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Stamps every request with a correlation ID (incoming X-Request-ID or a new
    req-xxxxxxxx), echoes it on the response and logs slow requests.

    Background tasks scheduled by the request inherit the same ID, so a webhook
    and its deferred processing share one trace.
    """

    slow_request_seconds = 2.0

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = set_correlation_id(request.headers.get(REQUEST_ID_HEADER))
        set_tenant_id(request.headers.get("X-User-ID"))

        started = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - started

        if elapsed > self.slow_request_seconds:
            logger.warning(f"⚠️ Slow request {request.method} {request.url.path} took {elapsed:.2f}s")

        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
