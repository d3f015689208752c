"""Middleware package exports."""

from handshake.middleware.correlation_id import CorrelationIdMiddleware
from handshake.middleware.logging import LoggingMiddleware
from handshake.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "SecurityHeadersMiddleware",
]
