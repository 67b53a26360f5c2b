"""Middleware package for the import guard."""

from importguard.app.middleware.import_rate_limit import (
    ImportRateLimitMiddleware,
    default_user_id_resolver,
    internal_error_response,
    rate_limit_exceeded_response,
)
from importguard.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "ImportRateLimitMiddleware",
    "default_user_id_resolver",
    "internal_error_response",
    "rate_limit_exceeded_response",
    "RequestIdMiddleware",
    "get_request_id",
]
