"""Request logging middleware with correlation IDs."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from basehealth_core.logging_config import clear_context, generate_request_id, set_request_id

logger = logging.getLogger("basehealth.api")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request ID (honoring an inbound ``X-Request-ID``), logs each
    request with its timing and echoes the ID in the response headers.
    """

    def __init__(
        self,
        app,
        exclude_paths: Optional[Iterable[str]] = None,
        slow_request_threshold_ms: float = 1000.0,
    ):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths or ())
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        clear_context()
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id

        path = request.url.path
        quiet = path in self.exclude_paths
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": path,
                    "error_type": type(exc).__name__,
                    "duration_ms": round(duration_ms, 2),
                },
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        context = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "has_payment": "x-payment" in request.headers,
        }
        if response.status_code >= 500:
            logger.error("Request completed with server error", extra=context)
        elif duration_ms > self.slow_request_threshold_ms:
            logger.warning("Slow request completed", extra=context)
        elif not quiet:
            logger.info("Request completed", extra=context)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


__all__ = ["RequestLoggingMiddleware"]
