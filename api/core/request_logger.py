"""
Access logging middleware.

One line per request with method, path, status, duration and the actor
named in the ``X-Actor`` header.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("proxy_manager.access")

_QUIET_PATHS = frozenset({"/", "/health", "/docs", "/redoc", "/openapi.json"})


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Logs every API request except documentation and health probes."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in _QUIET_PATHS:
            return await call_next(request)

        started = time.monotonic()
        response: Response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000

        logger.info(
            "%s %s -> %d in %.1fms actor=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.headers.get("x-actor") or "system",
        )
        return response
