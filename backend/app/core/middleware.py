"""
Per-request correlation and access logging.

Each request gets a request id (the caller's ``X-Request-ID`` when it is
usable, a fresh one otherwise) that is echoed back and attached to every
log line written while the request runs, together with the admin actor
(``X-Actor-ID``) or responder (``X-Responder-ID``) the gateway forwarded.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(header_value: Optional[str]) -> str:
    """Keep a caller-supplied id only if it is safe to echo and log."""
    if header_value and _REQUEST_ID_RE.match(header_value):
        return header_value
    return uuid.uuid4().hex[:16]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One access line per request: ``METHOD path → status (ms)``.

    4xx/5xx are logged at WARNING, everything else at INFO. Paths listed
    in ``quiet_paths`` (health polls, docs) drop to DEBUG.
    """

    def __init__(self, app: ASGIApp, quiet_paths: Iterable[str] = ()) -> None:
        super().__init__(app)
        self.quiet_paths = frozenset(quiet_paths)

    def _level_for(self, path: str, status_code: int) -> int:
        if status_code >= 400:
            return logging.WARNING
        if path in self.quiet_paths:
            return logging.DEBUG
        return logging.INFO

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        path = request.url.path
        set_request_context(
            request_id=request_id,
            endpoint=path,
            method=request.method,
            actor_id=request.headers.get("X-Actor-ID"),
            responder_id=request.headers.get("X-Responder-ID"),
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "%s %s → unhandled error (%.1fms)", request.method, path, duration_ms,
                extra={"duration_ms": duration_ms, "status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        logger.log(
            self._level_for(path, response.status_code),
            "%s %s → %d (%.1fms)",
            request.method, path, response.status_code, duration_ms,
            extra={
                "duration_ms": duration_ms,
                "status_code": response.status_code,
                "endpoint": path,
            },
        )
        set_request_context()
        return response
