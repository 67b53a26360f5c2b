"""Distributed import rate limiting across user, IP and wallet dimensions.

Every dimension keeps a sliding window of successful imports in the shared
store. A check walks the dimensions in priority order and reports the first
one that is full; counters are only incremented once the import succeeded.

Redis key format:
- <user_prefix>:<user_id>     - sorted set of import timestamps per user
- <ip_prefix>:<ip>            - per client IP
- <wallet_prefix>:<wallet_id> - per target wallet
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple, Union

from importguard.app.core.logging import get_log_context, get_logger
from importguard.app.exceptions import (
    PartialIncrementError,
    RateLimitExceededError,
    RateLimitStoreError,
    ScriptExecutionError,
    StoreUnavailableError,
)

from .counter import SlidingWindowCounter
from .models import DimensionConfig, LimitType, RateLimitConfig, RateLimitResult, WindowState
from .store import AtomicWindowStore

if TYPE_CHECKING:
    from importguard.app.core.config import Settings

logger = get_logger(__name__)

Identifier = Union[str, int]

# Store errors re-raised as their own class when a check fails
_CHECK_ERROR_CLASSES = (StoreUnavailableError, ScriptExecutionError)

_WINDOW_NAMES = {
    timedelta(minutes=1): "minute",
    timedelta(hours=1): "hour",
    timedelta(days=1): "day",
    timedelta(weeks=1): "week",
}


def describe_window(window: timedelta) -> str:
    """Human-readable window length: "hour", "day", "2 hours", "90 seconds"."""
    name = _WINDOW_NAMES.get(window)
    if name is not None:
        return name
    seconds = window.total_seconds()
    for unit_seconds, unit in ((86400, "days"), (3600, "hours"), (60, "minutes")):
        if seconds % unit_seconds == 0:
            return f"{int(seconds // unit_seconds)} {unit}"
    return f"{seconds:g} seconds"


@dataclass(frozen=True)
class Dimension:
    """One entry of the dimension policy."""
    limit_type: LimitType
    subject: str  # used in denial messages
    counter: SlidingWindowCounter

    @property
    def config(self) -> DimensionConfig:
        return self.counter.config


class ImportRateLimiter:
    """Allows or denies imports based on counts shared by all instances.

    Provides:
    - Ordered evaluation of user, IP and wallet limits (first violation wins)
    - Retry-After computed from the oldest entry in the violated window
    - Separate increment step, to be called only after a successful import

    The limiter holds no locks and no state besides its configuration;
    per-key atomicity is delegated to the store.
    """

    def __init__(
        self,
        store: AtomicWindowStore,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared window store
            config: Per-dimension limits, windows and key prefixes
            clock: Time source returning UNIX seconds
        """
        self._store = store
        self._config = config
        self._clock = clock
        # Priority order is part of the contract: it decides which
        # limit_type a request violating several dimensions reports.
        self._dimensions: Tuple[Dimension, ...] = (
            Dimension(LimitType.USER, "user", SlidingWindowCounter(store, config.user, clock)),
            Dimension(LimitType.IP, "IP address", SlidingWindowCounter(store, config.ip, clock)),
            Dimension(LimitType.WALLET, "wallet", SlidingWindowCounter(store, config.wallet, clock)),
        )

    @classmethod
    def from_settings(
        cls,
        store: AtomicWindowStore,
        settings: Optional["Settings"] = None,
    ) -> "ImportRateLimiter":
        """Build a limiter from application settings."""
        if settings is None:
            from importguard.app.core.config import settings as app_settings
            settings = app_settings
        return cls(store, RateLimitConfig.from_settings(settings))

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return self._dimensions

    def _bind(
        self,
        user_id: Identifier,
        ip: str,
        wallet_id: Optional[Identifier],
    ) -> List[Tuple[Dimension, str]]:
        """Pair each dimension with its identifier.

        User and IP are required; an absent wallet skips that dimension.
        """
        if user_id is None or user_id == "":
            raise ValueError("user_id is required")
        if ip is None or ip == "":
            raise ValueError("ip is required")

        bound = [
            (self._dimensions[0], str(user_id)),
            (self._dimensions[1], str(ip)),
        ]
        if wallet_id is not None and wallet_id != "":
            bound.append((self._dimensions[2], str(wallet_id)))
        return bound

    async def check_rate_limit(
        self,
        user_id: Identifier,
        ip: str,
        wallet_id: Optional[Identifier] = None,
    ) -> RateLimitResult:
        """Check all dimensions and return the first violation.

        Args:
            user_id: Authenticated user
            ip: Client IP address
            wallet_id: Target wallet; None skips the wallet dimension

        Returns:
            The denial of the first full dimension, or an allowed result
            describing the user dimension

        Raises:
            RateLimitStoreError: The store failed; neither allowed nor denied
            ValueError: user_id or ip is missing
        """
        user_state: Optional[WindowState] = None
        for dimension, identifier in self._bind(user_id, ip, wallet_id):
            name = dimension.limit_type.value
            try:
                state = await dimension.counter.check(identifier)
            except RateLimitStoreError as e:
                logger.error(
                    "import_rate_limit.store_error",
                    extra=get_log_context(limit_type=name, error=str(e)),
                )
                # Subclasses with their own constructor are reported as the base error
                error_class = type(e) if type(e) in _CHECK_ERROR_CLASSES else RateLimitStoreError
                raise error_class(f"failed to check {name} rate limit: {e.message}") from e

            if state.count >= dimension.config.max_count:
                result = self._denied(dimension, state)
                logger.warning(
                    "import_rate_limit.exceeded",
                    extra=get_log_context(
                        user_id=str(user_id),
                        client_ip=ip,
                        wallet_id=None if wallet_id is None else str(wallet_id),
                        limit_type=name,
                        limit=result.limit,
                        retry_after_s=result.retry_after_seconds,
                    ),
                )
                return result

            if dimension.limit_type is LimitType.USER:
                user_state = state

        result = self._allowed(self._dimensions[0], user_state or WindowState(count=0))
        logger.debug(
            "import_rate_limit.allowed",
            extra=get_log_context(
                user_id=str(user_id),
                limit_type=result.limit_type.value,
                remaining=result.remaining,
            ),
        )
        return result

    async def enforce(
        self,
        user_id: Identifier,
        ip: str,
        wallet_id: Optional[Identifier] = None,
    ) -> RateLimitResult:
        """Like check_rate_limit, but raise RateLimitExceededError on denial."""
        result = await self.check_rate_limit(user_id, ip, wallet_id)
        if not result.allowed:
            raise RateLimitExceededError(result)
        return result

    async def increment_counters(
        self,
        user_id: Identifier,
        ip: str,
        wallet_id: Optional[Identifier] = None,
    ) -> None:
        """Record one successful import in every dimension.

        Call only after check_rate_limit allowed the import and the import
        itself succeeded. Nothing is re-checked and nothing is rolled back:
        when a dimension fails, the ones before it keep their entry.

        Raises:
            PartialIncrementError: A dimension's increment failed
        """
        applied = []
        for dimension, identifier in self._bind(user_id, ip, wallet_id):
            name = dimension.limit_type.value
            try:
                await dimension.counter.increment(identifier)
            except RateLimitStoreError as e:
                raise PartialIncrementError(
                    failed_dimension=name,
                    applied_dimensions=applied,
                    detail=f"failed to increment {name} counter: {e.message}",
                ) from e
            applied.append(name)

    def _allowed(self, dimension: Dimension, state: WindowState) -> RateLimitResult:
        config = dimension.config
        now = self._clock()
        # Remaining counts the slot this import is about to take
        remaining = max(0, config.max_count - state.count - 1)
        return RateLimitResult(
            allowed=True,
            limit_type=dimension.limit_type,
            limit=config.max_count,
            remaining=remaining,
            reset_at=datetime.fromtimestamp(now + config.window_seconds, tz=timezone.utc),
            retry_after_seconds=0,
        )

    def _denied(self, dimension: Dimension, state: WindowState) -> RateLimitResult:
        config = dimension.config
        now = self._clock()
        if state.oldest_score_ms is not None:
            reset_ts = state.oldest_score_ms / 1000 + config.window_seconds
            retry_after = max(1, math.ceil(reset_ts - now))
        else:
            reset_ts = now + config.window_seconds
            retry_after = max(1, math.ceil(config.window_seconds))

        message = (
            f"Maximum {config.max_count} imports per {describe_window(config.window)} "
            f"per {dimension.subject} exceeded. Try again in {retry_after} seconds."
        )
        return RateLimitResult(
            allowed=False,
            limit_type=dimension.limit_type,
            limit=config.max_count,
            remaining=0,
            reset_at=datetime.fromtimestamp(reset_ts, tz=timezone.utc),
            retry_after_seconds=retry_after,
            error_message=message,
        )
