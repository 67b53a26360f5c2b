"""Tests for the window store implementations."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from importguard.app.exceptions import ScriptExecutionError, StoreUnavailableError
from importguard.app.services.import_rate_limit import (
    EVICT_AND_COUNT_SCRIPT,
    InMemoryWindowStore,
    RedisWindowStore,
    WindowState,
)
from importguard.app.services.import_rate_limit.store import _WindowKey

KEY = "test:ratelimit:import:user:1"
HOUR_MS = 3_600_000


class TestWindowKey:
    """Tests for the internal _WindowKey class."""

    def test_no_expiry_never_expires(self):
        assert not _WindowKey().is_expired(10**12)

    def test_expired_at_deadline(self):
        window_key = _WindowKey(expires_at=100.0)
        assert not window_key.is_expired(99.9)
        assert window_key.is_expired(100.0)


class TestInMemoryWindowStore:
    """Tests for the InMemoryWindowStore implementation."""

    @pytest.mark.asyncio
    async def test_missing_key_counts_zero(self, store):
        state = await store.evict_and_count(KEY, 0, 1000, HOUR_MS)
        assert state == WindowState(count=0)
        assert KEY not in store._keys

    @pytest.mark.asyncio
    async def test_count_and_oldest(self, store):
        await store.add_entry(KEY, 5000, "b", HOUR_MS)
        await store.add_entry(KEY, 3000, "a", HOUR_MS)

        state = await store.evict_and_count(KEY, 0, 6000, HOUR_MS)
        assert state.count == 2
        assert state.oldest_score_ms == 3000

    @pytest.mark.asyncio
    async def test_prunes_strictly_below_window_start(self, store):
        await store.add_entry(KEY, 999, "old", HOUR_MS)
        await store.add_entry(KEY, 1000, "edge", HOUR_MS)
        await store.add_entry(KEY, 1500, "new", HOUR_MS)

        state = await store.evict_and_count(KEY, 1000, 2000, HOUR_MS)
        assert state.count == 2
        assert state.oldest_score_ms == 1000
        assert "old" not in store._keys[KEY].entries

    @pytest.mark.asyncio
    async def test_empty_window_removes_key(self, store):
        await store.add_entry(KEY, 1000, "a", HOUR_MS)

        state = await store.evict_and_count(KEY, 5000, 6000, HOUR_MS)
        assert state.count == 0
        assert state.oldest_score_ms is None
        assert KEY not in store._keys

    @pytest.mark.asyncio
    async def test_same_member_is_stored_once(self, store):
        await store.add_entry(KEY, 1000, "dup", HOUR_MS)
        await store.add_entry(KEY, 2000, "dup", HOUR_MS)

        state = await store.evict_and_count(KEY, 0, 3000, HOUR_MS)
        assert state.count == 1
        assert state.oldest_score_ms == 2000

    @pytest.mark.asyncio
    async def test_add_entry_sets_ttl(self, store, clock):
        await store.add_entry(KEY, 1000, "a", HOUR_MS + 60_000)
        assert store._keys[KEY].expires_at == clock.now + 3660

    @pytest.mark.asyncio
    async def test_check_refreshes_ttl_to_window(self, store, clock):
        await store.add_entry(KEY, 1000, "a", HOUR_MS + 60_000)
        await store.evict_and_count(KEY, 0, 2000, 1500)
        assert store._keys[KEY].expires_at == clock.now + 2

    @pytest.mark.asyncio
    async def test_expired_key_is_gone(self, store, clock):
        await store.add_entry(KEY, 1000, "a", 10_000)
        clock.advance(10)

        state = await store.evict_and_count(KEY, 0, 2000, HOUR_MS)
        assert state.count == 0
        assert KEY not in store._keys

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, store):
        await store.add_entry(KEY, 1000, "a", HOUR_MS)
        await store.add_entry("test:ratelimit:import:user:2", 1000, "b", HOUR_MS)

        await store.evict_and_count(KEY, 5000, 6000, HOUR_MS)
        state = await store.evict_and_count("test:ratelimit:import:user:2", 0, 6000, HOUR_MS)
        assert state.count == 1

    @pytest.mark.asyncio
    async def test_idle_keys_swept_without_being_touched(self, store, clock):
        for i in range(1000):
            await store.add_entry(f"test:ratelimit:import:ip:10.0.{i // 256}.{i % 256}",
                                  1000, f"m{i}", HOUR_MS + 60_000)

        clock.advance(10 * 86400)
        for i in range(50):
            await store.add_entry(KEY, 2000 + i, f"u{i}", HOUR_MS + 60_000)
            await store.evict_and_count(KEY, 0, 3000, HOUR_MS)

        assert list(store._keys) == [KEY]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store, clock):
        await store.add_entry(KEY, 1000, "a", 10_000)
        await store.add_entry("test:ratelimit:import:user:2", 1000, "b", HOUR_MS)
        clock.advance(30)

        assert await store.cleanup_expired() == 1
        assert list(store._keys) == ["test:ratelimit:import:user:2"]

    @pytest.mark.asyncio
    async def test_max_entries_evicts_least_recently_used(self, clock):
        store = InMemoryWindowStore(clock=clock, max_entries=5)
        for i in range(5):
            await store.add_entry(f"k{i}", 1000, "m", HOUR_MS)

        # Touching k0 makes k1 the least recently used key
        await store.evict_and_count("k0", 0, 2000, HOUR_MS)
        await store.add_entry("k5", 1000, "m", HOUR_MS)

        assert "k1" not in store._keys
        assert {"k0", "k5"} <= set(store._keys)
        assert len(store._keys) == 5

    @pytest.mark.asyncio
    async def test_max_entries_drops_expired_keys_first(self, clock):
        store = InMemoryWindowStore(clock=clock, max_entries=3)
        await store.add_entry("short", 1000, "m", 1000)
        await store.add_entry("b", 1000, "m", HOUR_MS)
        await store.add_entry("c", 1000, "m", HOUR_MS)

        clock.advance(2)
        await store.add_entry("d", 1000, "m", HOUR_MS)

        assert set(store._keys) == {"b", "c", "d"}

    @pytest.mark.asyncio
    async def test_ping_and_clear(self, store):
        await store.add_entry(KEY, 1000, "a", HOUR_MS)
        assert await store.ping() is True
        await store.clear()
        assert store._keys == {}


@pytest.fixture
def mock_redis():
    """Mock redis.asyncio client with a pipeline that records commands."""
    client = MagicMock()
    client.eval = AsyncMock(return_value=[0, None])
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline.return_value = pipe
    return client


class TestRedisWindowStore:
    """Tests for RedisWindowStore against a mocked client."""

    @pytest.mark.asyncio
    async def test_evict_and_count_runs_script(self, mock_redis):
        mock_redis.eval.return_value = [2, b"1700000000000"]
        store = RedisWindowStore(mock_redis)

        state = await store.evict_and_count(KEY, 1000, 2000, HOUR_MS)

        mock_redis.eval.assert_awaited_once_with(
            EVICT_AND_COUNT_SCRIPT, 1, KEY, 1000, 2000, HOUR_MS
        )
        assert state == WindowState(count=2, oldest_score_ms=1700000000000)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ([0, None], WindowState(count=0)),
            ([1, "1234"], WindowState(count=1, oldest_score_ms=1234)),
            ([3, b"1234.0"], WindowState(count=3, oldest_score_ms=1234)),
            ([1], WindowState(count=1)),
            (None, WindowState(count=0)),
        ],
    )
    def test_parse_window_state(self, raw, expected):
        assert RedisWindowStore._parse_window_state(raw) == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [redis.ConnectionError("refused"), redis.TimeoutError("slow")])
    async def test_unreachable_redis_raises_unavailable(self, mock_redis, error):
        mock_redis.eval.side_effect = error
        store = RedisWindowStore(mock_redis)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.evict_and_count(KEY, 1000, 2000, HOUR_MS)
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_script_error_raises_script_execution(self, mock_redis):
        mock_redis.eval.side_effect = redis.ResponseError("NOSCRIPT")
        store = RedisWindowStore(mock_redis)

        with pytest.raises(ScriptExecutionError):
            await store.evict_and_count(KEY, 1000, 2000, HOUR_MS)

    @pytest.mark.asyncio
    async def test_add_entry_pipelines_zadd_and_pexpire(self, mock_redis):
        store = RedisWindowStore(mock_redis)

        await store.add_entry(KEY, 1500, "member-1", HOUR_MS + 60_000)

        mock_redis.pipeline.assert_called_once_with(transaction=False)
        pipe = mock_redis.pipeline.return_value
        pipe.zadd.assert_called_once_with(KEY, {"member-1": 1500})
        pipe.pexpire.assert_called_once_with(KEY, HOUR_MS + 60_000)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_add_entry_failure_raises(self, mock_redis):
        mock_redis.pipeline.return_value.execute.side_effect = redis.ConnectionError("reset")
        store = RedisWindowStore(mock_redis)

        with pytest.raises(StoreUnavailableError):
            await store.add_entry(KEY, 1500, "member-1", HOUR_MS)

    @pytest.mark.asyncio
    async def test_ping(self, mock_redis):
        store = RedisWindowStore(mock_redis)
        assert await store.ping() is True

        mock_redis.ping.side_effect = redis.ConnectionError("down")
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, mock_redis):
        store = RedisWindowStore(mock_redis)
        await store.close()
        mock_redis.aclose.assert_awaited_once()
