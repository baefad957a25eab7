"""Problem Details (RFC 7807) responses for the payment API.

Every error leaves the API as ``application/problem+json``::

    {
        "type": "https://api.basehealth.xyz/errors/scheme-network-mismatch",
        "title": "Scheme Network Mismatch",
        "status": 400,
        "detail": "Payment for exact/solana does not match an offered requirement",
        "instance": "/checkout/sessions/cs_1/wallet",
        "request_id": "req_0f3c9a1b2d4e5f60",
        "timestamp": "2026-03-01T12:00:00Z",
        "error_code": "SCHEME_NETWORK_MISMATCH",
        "reason": "scheme/network mismatch"
    }

The 402 bodies of ``/resource`` and the ``/settle`` settlement bodies are
protocol messages, not errors, and are built by the x402 router.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from basehealth_core.exceptions import PaymentGateError

logger = logging.getLogger(__name__)

ERROR_TYPE_BASE = "https://api.basehealth.xyz/errors"
PROBLEM_JSON = "application/problem+json"

# error codes for plain HTTP errors raised by routing or routers
HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return request_id or request.headers.get("X-Request-ID", "unknown")


def _exposes_internals(request: Request) -> bool:
    deps = getattr(request.app.state, "deps", None)
    return deps is None or deps.settings.environment == "dev"


def problem_response(
    request: Request,
    status_code: int,
    error_code: str,
    detail: str,
    extensions: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Build a problem+json response for ``request``."""
    request_id = get_request_id(request)
    body: Dict[str, Any] = {
        "type": f"{ERROR_TYPE_BASE}/{error_code.lower().replace('_', '-')}",
        "title": error_code.replace("_", " ").title(),
        "status": status_code,
        "detail": detail,
        "instance": request.url.path,
        "request_id": request_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    body.update(extensions or {})
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={"X-Request-ID": request_id},
        media_type=PROBLEM_JSON,
    )


async def _on_payment_gate_error(request: Request, exc: PaymentGateError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message, exc_info=True)
    else:
        logger.info("%s on %s: %s", exc.error_code, request.url.path, exc.message)

    extensions: Dict[str, Any] = {"error_code": exc.error_code, "reason": exc.reason}
    # server-side details can carry DSNs or upstream URLs
    if exc.details and (exc.http_status < 500 or _exposes_internals(request)):
        extensions["details"] = exc.details
    return problem_response(request, exc.http_status, exc.error_code, exc.message, extensions)


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.info("Rejected %s: %d invalid field(s)", request.url.path, len(errors))
    return problem_response(
        request,
        422,
        "VALIDATION_ERROR",
        "One or more fields failed validation",
        {"errors": errors},
    )


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    log = logger.error if exc.status_code >= 500 else logger.info
    log("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
    return problem_response(request, exc.status_code, code, str(exc.detail or code))


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled %s on %s", type(exc).__name__, request.url.path)
    detail = f"{type(exc).__name__}: {exc}" if _exposes_internals(request) else "An internal error occurred"
    return problem_response(request, 500, "INTERNAL_ERROR", detail)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentGateError, _on_payment_gate_error)
    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(StarletteHTTPException, _on_http_error)
    app.add_exception_handler(Exception, _on_unhandled)


__all__ = [
    "get_request_id",
    "problem_response",
    "register_exception_handlers",
]
