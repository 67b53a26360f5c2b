"""Distributed import rate limiting backed by a shared sliding window store.

This package checks user, IP and wallet limits with atomic Redis Lua
scripts, so every instance of the service sees the same counts.
"""

from .counter import INCREMENT_TTL_BUFFER_MS, SlidingWindowCounter
from .models import (
    DimensionConfig,
    LimitType,
    RateLimitConfig,
    RateLimitResult,
    WindowState,
)
from .redis_lua import EVICT_AND_COUNT_SCRIPT
from .service import Dimension, ImportRateLimiter, describe_window
from .store import AtomicWindowStore, InMemoryWindowStore, RedisWindowStore

__all__ = [
    "DimensionConfig",
    "LimitType",
    "RateLimitConfig",
    "RateLimitResult",
    "WindowState",
    "EVICT_AND_COUNT_SCRIPT",
    "INCREMENT_TTL_BUFFER_MS",
    "SlidingWindowCounter",
    "Dimension",
    "ImportRateLimiter",
    "describe_window",
    "AtomicWindowStore",
    "InMemoryWindowStore",
    "RedisWindowStore",
]
