"""Starlette middleware binding a request id to each API call."""

from __future__ import annotations

import logging
import time

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from fleetctl.observability.request_context import (
    REQUEST_ID_HEADER,
    ensure_request_id,
    reset_request_id,
    set_request_id,
)

logger = logging.getLogger(__name__)

# Heartbeats hold the connection for the whole long-poll window
LONG_POLL_PATHS = frozenset({"/api/devices/heartbeat"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagate or mint X-Request-ID and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = ensure_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = set_request_id(request_id)
        request.state.request_id = request_id
        trace.get_current_span().set_attribute("request.id", request_id)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            path = request.url.path
            log = logger.debug if path in LONG_POLL_PATHS and status_code < 400 else logger.info
            log(
                "http_request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            reset_request_id(token)
