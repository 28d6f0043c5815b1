"""
Request id tracking and the request logging middleware.

Logs one structured line per request (method, path, status, timing).
NEVER logs request bodies: submissions may carry private repository URLs.
"""
import logging
import re
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from launchpad.core.metrics import metrics

logger = logging.getLogger("launchpad.request")

# Incoming ids are echoed back in headers and logs
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_QUIET_PATHS = frozenset({"/health", "/metrics"})

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Request id of the request being handled, or "" outside a request."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Use the caller's request id when it is well formed, otherwise a new uuid4."""
    if not request_id or not _REQUEST_ID_PATTERN.match(request_id):
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an X-Request-Id, counts it by status class and
    logs it. Health and metrics scrapes are counted but not logged.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        status_class = response.status_code // 100
        if status_class in (2, 4, 5):
            metrics.inc(f"requests_{status_class}xx")

        path = request.url.path
        if path not in _QUIET_PATHS:
            logger.log(
                logging.WARNING if status_class == 5 else logging.INFO,
                f"request {request.method} {path} status={response.status_code}",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "client_ip": _client_ip(request),
                },
            )

        return response
