"""Custom exceptions for the import guard service."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from importguard.app.services.import_rate_limit.models import RateLimitResult


class ImportGuardException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Import guard error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(ImportGuardException, ValueError):
    """Raised when a rate limit dimension is configured with a
    non-positive limit or window.

    This is a programmer error detected at construction time.
    """
    status_code = 500


class RateLimitStoreError(ImportGuardException):
    """The shared window store could not answer.

    Never interpreted as "allowed" or "denied": callers map it to an
    internal error response.
    """
    status_code = 500


class StoreUnavailableError(RateLimitStoreError):
    """The store could not be reached (connection refused, timeout)."""


class ScriptExecutionError(RateLimitStoreError):
    """The store was reached but its atomic script or pipeline failed."""


class PartialIncrementError(RateLimitStoreError):
    """Raised when one dimension's increment fails after others succeeded.

    Dimensions listed in ``applied_dimensions`` keep their new entry; there
    is no rollback.
    """

    def __init__(
        self,
        failed_dimension: str,
        applied_dimensions: Sequence[str] = (),
        detail: str | None = None,
    ):
        self.failed_dimension = failed_dimension
        self.applied_dimensions = tuple(applied_dimensions)
        message = detail or f"failed to increment {failed_dimension} counter"
        if self.applied_dimensions:
            message += f" (already applied: {', '.join(self.applied_dimensions)})"
        super().__init__(message)


class RateLimitExceededError(ImportGuardException):
    """Raised when an import is denied by one of the rate limit dimensions.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: "RateLimitResult"):
        self.result = result
        super().__init__(result.error_message or "Rate limit exceeded")
