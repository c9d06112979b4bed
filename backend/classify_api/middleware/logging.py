"""
Classify API Backend — Request Logging Middleware
=================================================

What:  One access-log line per HTTP request with status and duration.
How:   Measures from middleware entry to response, picks the log level from
       the status class, and attaches structured fields via `extra`.

Never logged: request bodies (images), Authorization headers, tokens.

Typical durations:
    - GET /health: 1-5ms (plus the Ollama probe)
    - GET /api/v1/classify/history: 10-50ms
    - POST /api/v1/classify/image: seconds, dominated by the model and queue wait
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from classify_api.middleware.request_id import request_id_var

logger = logging.getLogger("classify_api.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    # Polled by load balancers; too noisy to log
    QUIET_PATHS = {"/health"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        path = request.url.path
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
