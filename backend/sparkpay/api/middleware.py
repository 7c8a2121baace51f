"""
Request correlation and access logging, with per-route HTTP metrics.
"""

import re
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sparkpay.core.logging import get_logger
from sparkpay.core.metrics import record_http_request

logger = get_logger(__name__)

# Scraped every few seconds; only logged at debug level
QUIET_PATHS = frozenset({"/health", "/metrics"})
# Caller-supplied IDs end up in log lines, so only accept short opaque tokens
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id(request: Request) -> str:
    supplied = request.headers.get("x-request-id")
    if supplied and _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex[:12]


def _route_label(request: Request) -> str:
    # Route template keeps metric cardinality bounded (/orders/{order_number}).
    # The router stores the matched route in the scope, so read it after call_next.
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template or "unmatched"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Reuses the caller's X-Request-ID (or assigns one) so gateway redeliveries
    and client retries can be followed across requests. The ID and request
    line are bound into structlog's context; payment handlers add the order
    number on top of it.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        started = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = time.perf_counter() - started
            record_http_request(request.method, _route_label(request), 500, elapsed)
            logger.exception("request_failed", error=str(e), duration_ms=round(elapsed * 1000, 2))
            raise

        elapsed = time.perf_counter() - started
        duration_ms = round(elapsed * 1000, 2)
        record_http_request(request.method, _route_label(request), response.status_code, elapsed)

        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log("request_completed", status_code=response.status_code, duration_ms=duration_ms)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms}ms"
        return response
