"""Data models for distributed import rate limiting."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from importguard.app.exceptions import ConfigurationError

if TYPE_CHECKING:
    from importguard.app.core.config import Settings


class LimitType(str, Enum):
    """Rate limit dimension, in priority order."""

    USER = "user"
    IP = "ip"
    WALLET = "wallet"


@dataclass(frozen=True)
class DimensionConfig:
    """Threshold, window and key namespace of one dimension.

    Attributes:
        max_count: Maximum imports admitted inside one window
        window: Length of the sliding window
        key_prefix: Store key namespace (``<prefix>:<identifier>``)
    """
    max_count: int
    window: timedelta
    key_prefix: str

    def __post_init__(self) -> None:
        if self.max_count <= 0:
            raise ConfigurationError(f"max_count must be positive, got {self.max_count}")
        if self.window <= timedelta(0):
            raise ConfigurationError(f"window must be positive, got {self.window}")
        if not self.key_prefix:
            raise ConfigurationError("key_prefix must be a non-empty string")

    @property
    def window_ms(self) -> int:
        return int(self.window.total_seconds() * 1000)

    @property
    def window_seconds(self) -> float:
        return self.window.total_seconds()


@dataclass(frozen=True)
class RateLimitConfig:
    """Import rate limit configuration for all three dimensions.

    Built once at process start and shared read-only by the limiter.
    """
    user: DimensionConfig
    ip: DimensionConfig
    wallet: DimensionConfig

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RateLimitConfig":
        """Build the configuration from application settings."""
        return cls(
            user=DimensionConfig(
                max_count=settings.import_max_per_user,
                window=timedelta(seconds=settings.import_user_window_seconds),
                key_prefix=settings.import_user_key_prefix,
            ),
            ip=DimensionConfig(
                max_count=settings.import_max_per_ip,
                window=timedelta(seconds=settings.import_ip_window_seconds),
                key_prefix=settings.import_ip_key_prefix,
            ),
            wallet=DimensionConfig(
                max_count=settings.import_max_per_wallet,
                window=timedelta(seconds=settings.import_wallet_window_seconds),
                key_prefix=settings.import_wallet_key_prefix,
            ),
        )

    def with_prefix(self, namespace: str) -> "RateLimitConfig":
        """Return a copy with every key prefix placed under ``namespace``.

        Used to keep test runs away from production keys.
        """
        return RateLimitConfig(
            user=replace(self.user, key_prefix=f"{namespace}:{self.user.key_prefix}"),
            ip=replace(self.ip, key_prefix=f"{namespace}:{self.ip.key_prefix}"),
            wallet=replace(self.wallet, key_prefix=f"{namespace}:{self.wallet.key_prefix}"),
        )


@dataclass(frozen=True)
class WindowState:
    """Outcome of one atomic evict-and-count on a window key.

    Attributes:
        count: Entries left in the window after pruning
        oldest_score_ms: Score of the oldest remaining entry, None when empty
    """
    count: int
    oldest_score_ms: Optional[int] = None


@dataclass(frozen=True)
class RateLimitResult:
    """Result of an import rate limit check.

    Attributes:
        allowed: Whether the import may proceed
        limit_type: Dimension the result describes (the violated one when denied)
        limit: Maximum imports per window for that dimension
        remaining: Slots left in that dimension, never negative
        reset_at: When a slot frees up (denied) or the window ends (allowed)
        retry_after_seconds: At least 1 when denied, 0 otherwise
        error_message: Human-readable denial reason
    """
    allowed: bool
    limit_type: LimitType
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int = 0
    error_message: Optional[str] = None

    @property
    def reset_at_epoch(self) -> int:
        """Reset time as UNIX epoch seconds, rounded up."""
        return math.ceil(self.reset_at.timestamp())

    def to_headers(self) -> Dict[str, str]:
        """Rate limit response headers for this result."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_epoch),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_error_body(self) -> Dict[str, Any]:
        """JSON body returned with a 429 response."""
        return {
            "success": False,
            "message": self.error_message,
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "limitType": self.limit_type.value,
                "limit": self.limit,
                "retryAfter": self.retry_after_seconds,
            },
        }
