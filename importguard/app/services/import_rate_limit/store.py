"""Window store abstraction for the import rate limiter.

The limiter only needs two operations from the shared store: an atomic
evict-and-count over one ordered set, and a pipelined add-entry that also
refreshes the key's expiry. Redis provides both; an in-memory implementation
exists for single-instance deployments and tests.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import redis
import redis.asyncio as aioredis

from importguard.app.core.logging import get_logger
from importguard.app.exceptions import ScriptExecutionError, StoreUnavailableError

from .models import WindowState
from .redis_lua import EVICT_AND_COUNT_SCRIPT

logger = get_logger(__name__)


class AtomicWindowStore(ABC):
    """Abstract base class for sliding window stores.

    Implementations must make ``evict_and_count`` indivisible per key.
    Failures are raised as ``RateLimitStoreError`` subclasses.
    """

    @abstractmethod
    async def evict_and_count(
        self,
        key: str,
        window_start_ms: int,
        now_ms: int,
        window_ms: int,
    ) -> WindowState:
        """Prune expired entries and count what is left, atomically.

        Args:
            key: Window key
            window_start_ms: Entries scored strictly below this are removed
            now_ms: Current time in milliseconds
            window_ms: Window length, used to refresh the key expiry

        Returns:
            WindowState with the remaining count and oldest score
        """
        pass

    @abstractmethod
    async def add_entry(
        self,
        key: str,
        score_ms: int,
        member: str,
        ttl_ms: int,
    ) -> None:
        """Add one entry to the window and refresh the key expiry.

        Args:
            key: Window key
            score_ms: Entry timestamp in milliseconds
            member: Unique entry id
            ttl_ms: Key expiry in milliseconds
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the store answers."""
        pass

    async def close(self) -> None:
        """Release store resources."""
        return None


class RedisWindowStore(AtomicWindowStore):
    """Redis-backed window store shared by every instance.

    Uses one sorted set per key: score is the entry timestamp in ms, the
    member is a unique id. Evict-and-count runs as a Lua script.

    Example:
        >>> store = RedisWindowStore.from_url("redis://localhost:6379/0")
        >>> state = await store.evict_and_count("ratelimit:import:user:1", start, now, 3600000)
    """

    def __init__(self, redis_client: Any) -> None:
        """Initialize the store.

        Args:
            redis_client: A ``redis.asyncio.Redis`` client (or compatible)
        """
        self._redis = redis_client

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        socket_timeout: Optional[float] = None,
        socket_connect_timeout: Optional[float] = None,
    ) -> "RedisWindowStore":
        """Create a store with its own client from a connection URL."""
        client = aioredis.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        return cls(client)

    @property
    def client(self) -> Any:
        return self._redis

    async def evict_and_count(
        self,
        key: str,
        window_start_ms: int,
        now_ms: int,
        window_ms: int,
    ) -> WindowState:
        try:
            result = await self._redis.eval(
                EVICT_AND_COUNT_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                window_start_ms,  # ARGV[1]
                now_ms,  # ARGV[2]
                window_ms,  # ARGV[3]
            )
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis unavailable during window check for {key}: {e}")
            raise StoreUnavailableError(f"window store unavailable: {e}") from e
        except redis.RedisError as e:
            logger.error(f"Lua script execution failed for {key}: {e}")
            raise ScriptExecutionError(f"window check script failed: {e}") from e

        return self._parse_window_state(result)

    @staticmethod
    def _parse_window_state(result: Any) -> WindowState:
        if not result:
            return WindowState(count=0)
        count = int(result[0])
        oldest_raw = result[1] if len(result) > 1 else None
        if oldest_raw is None or count == 0:
            return WindowState(count=count)
        if isinstance(oldest_raw, bytes):
            oldest_raw = oldest_raw.decode()
        return WindowState(count=count, oldest_score_ms=int(float(oldest_raw)))

    async def add_entry(
        self,
        key: str,
        score_ms: int,
        member: str,
        ttl_ms: int,
    ) -> None:
        try:
            # Sent together, but not a transaction
            pipe = self._redis.pipeline(transaction=False)
            pipe.zadd(key, {member: score_ms})
            pipe.pexpire(key, ttl_ms)
            await pipe.execute()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis unavailable during window increment for {key}: {e}")
            raise StoreUnavailableError(f"window store unavailable: {e}") from e
        except redis.RedisError as e:
            logger.error(f"Window increment pipeline failed for {key}: {e}")
            raise ScriptExecutionError(f"window increment failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()


@dataclass
class _WindowKey:
    """Internal sorted set state with TTL tracking."""

    entries: Dict[str, int] = field(default_factory=dict)
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class InMemoryWindowStore(AtomicWindowStore):
    """In-memory window store with the same semantics as the Redis one.

    Features:
    - Expired keys are swept periodically, even if never touched again
    - Uses OrderedDict for LRU eviction once ``max_entries`` is exceeded

    Note: This store is not distributed. Each process enforces its own
    limits and data is lost when the application restarts.
    """

    DEFAULT_MAX_ENTRIES = 100_000
    DEFAULT_SWEEP_INTERVAL = 60.0

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source returning UNIX seconds, used for key expiry
            max_entries: Maximum number of keys to hold (LRU eviction)
            sweep_interval: Seconds between sweeps of expired keys
        """
        self._keys: OrderedDict[str, _WindowKey] = OrderedDict()
        self._clock = clock
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval
        self._next_sweep_at = clock() + sweep_interval
        self._lock = threading.Lock()

    def _sweep_expired(self, now: float) -> int:
        expired = [key for key, window_key in self._keys.items() if window_key.is_expired(now)]
        for key in expired:
            del self._keys[key]
        self._next_sweep_at = now + self._sweep_interval
        return len(expired)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now >= self._next_sweep_at:
            self._sweep_expired(now)

    def _enforce_lru_limit(self) -> None:
        """Make room for one more key, dropping expired keys first."""
        if len(self._keys) < self._max_entries:
            return
        self._sweep_expired(self._clock())
        if len(self._keys) < self._max_entries:
            return
        # Remove least recently used 20% of keys
        remove_count = max(1, int(self._max_entries * 0.2))
        for _ in range(remove_count):
            self._keys.popitem(last=False)
        logger.warning(
            f"In-memory window store full: evicted {remove_count} live keys "
            f"(max_entries={self._max_entries})"
        )

    def _get_live(self, key: str) -> Optional[_WindowKey]:
        window_key = self._keys.get(key)
        if window_key is None:
            return None
        if window_key.is_expired(self._clock()):
            del self._keys[key]
            return None
        self._keys.move_to_end(key)
        return window_key

    async def evict_and_count(
        self,
        key: str,
        window_start_ms: int,
        now_ms: int,
        window_ms: int,
    ) -> WindowState:
        with self._lock:
            self._maybe_sweep()
            window_key = self._get_live(key)
            if window_key is None:
                return WindowState(count=0)

            expired = [m for m, score in window_key.entries.items() if score < window_start_ms]
            for member in expired:
                del window_key.entries[member]

            if not window_key.entries:
                # An empty sorted set does not exist
                del self._keys[key]
                return WindowState(count=0)

            window_key.expires_at = self._clock() + math.ceil(window_ms / 1000)
            return WindowState(
                count=len(window_key.entries),
                oldest_score_ms=min(window_key.entries.values()),
            )

    async def add_entry(
        self,
        key: str,
        score_ms: int,
        member: str,
        ttl_ms: int,
    ) -> None:
        with self._lock:
            self._maybe_sweep()
            window_key = self._get_live(key)
            if window_key is None:
                self._enforce_lru_limit()
                window_key = _WindowKey()
                self._keys[key] = window_key
            window_key.entries[member] = score_ms
            window_key.expires_at = self._clock() + ttl_ms / 1000

    async def ping(self) -> bool:
        return True

    async def cleanup_expired(self) -> int:
        """Remove all expired keys now.

        Returns:
            Number of keys removed.
        """
        with self._lock:
            return self._sweep_expired(self._clock())

    async def clear(self) -> None:
        """Drop every window."""
        with self._lock:
            self._keys.clear()
