"""Sliding window counter over one dimension's key namespace."""

import secrets
import time
from typing import Callable

from .models import DimensionConfig, WindowState
from .store import AtomicWindowStore

# Increment keeps keys alive longer than check does, to absorb clock and
# latency skew between the two calls.
INCREMENT_TTL_BUFFER_MS = 60_000


class SlidingWindowCounter:
    """Counts entries of one (prefix, max, window) dimension in the store.

    ``check`` prunes and counts atomically without recording anything;
    ``increment`` records one entry. The two are separate round-trips, so
    concurrent callers can both pass ``check`` before either increments.
    That bounded over-admission is accepted.
    """

    def __init__(
        self,
        store: AtomicWindowStore,
        config: DimensionConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    @property
    def config(self) -> DimensionConfig:
        return self._config

    def make_key(self, identifier: str) -> str:
        return f"{self._config.key_prefix}:{identifier}"

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check(self, identifier: str) -> WindowState:
        """Prune entries older than the window and count the rest."""
        now_ms = self.now_ms()
        window_ms = self._config.window_ms
        return await self._store.evict_and_count(
            self.make_key(identifier),
            window_start_ms=now_ms - window_ms,
            now_ms=now_ms,
            window_ms=window_ms,
        )

    async def increment(self, identifier: str) -> None:
        """Record one entry at the current time."""
        now_ms = self.now_ms()
        await self._store.add_entry(
            self.make_key(identifier),
            score_ms=now_ms,
            member=self._new_member(),
            ttl_ms=self._config.window_ms + INCREMENT_TTL_BUFFER_MS,
        )

    @staticmethod
    def _new_member() -> str:
        # Unique even for two increments in the same millisecond
        return f"{time.time_ns()}-{secrets.token_hex(4)}"
