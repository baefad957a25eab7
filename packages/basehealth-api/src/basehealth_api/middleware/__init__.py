"""Middleware for the BaseHealth payment API.

- Request ID tracking and request logging
- Exception handling (RFC 7807)
"""
from .exceptions import get_request_id, problem_response, register_exception_handlers
from .logging import RequestLoggingMiddleware

__all__ = [
    "get_request_id",
    "problem_response",
    "register_exception_handlers",
    "RequestLoggingMiddleware",
]
