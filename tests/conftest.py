"""Shared fixtures for import rate limiting tests."""

from datetime import timedelta

import pytest

from importguard.app.services.import_rate_limit import (
    DimensionConfig,
    ImportRateLimiter,
    InMemoryWindowStore,
    RateLimitConfig,
)

TEST_PREFIX = "test:ratelimit:import"


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(
    max_per_user: int = 10,
    user_window: timedelta = timedelta(hours=1),
    max_per_ip: int = 50,
    ip_window: timedelta = timedelta(hours=1),
    max_per_wallet: int = 20,
    wallet_window: timedelta = timedelta(days=1),
) -> RateLimitConfig:
    return RateLimitConfig(
        user=DimensionConfig(max_per_user, user_window, f"{TEST_PREFIX}:user"),
        ip=DimensionConfig(max_per_ip, ip_window, f"{TEST_PREFIX}:ip"),
        wallet=DimensionConfig(max_per_wallet, wallet_window, f"{TEST_PREFIX}:wallet"),
    )


@pytest.fixture(name="make_config")
def make_config_fixture():
    return make_config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryWindowStore(clock=clock)


@pytest.fixture
def make_limiter(store, clock):
    """Factory building a limiter over the shared in-memory store."""

    def _make(**config_kwargs) -> ImportRateLimiter:
        return ImportRateLimiter(store, make_config(**config_kwargs), clock=clock)

    return _make
