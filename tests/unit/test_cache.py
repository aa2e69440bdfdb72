"""Typed cache keys and the fail-open Redis wrapper."""

from unittest.mock import AsyncMock

import pytest

from learnpath.cache import CacheKey, CacheKind, ProgressCache


class TestCacheKey:
    def test_balance_key(self):
        assert CacheKey.coin_balance(9).render() == "learnpath:coin_balance:9"

    def test_user_scoped_keys(self):
        assert CacheKey.week_progress(9, 4).render() == "learnpath:week_progress:4:user:9"
        assert CacheKey.cohort_progress(9, 2).render() == "learnpath:cohort_progress:2:user:9"

    def test_keys_are_hashable_values(self):
        assert CacheKey(CacheKind.COIN_BALANCE, 1) == CacheKey.coin_balance(1)
        assert len({CacheKey.coin_balance(1), CacheKey.coin_balance(1)}) == 1


class TestProgressCache:
    @pytest.mark.asyncio
    async def test_no_client_is_a_noop(self):
        cache = ProgressCache(None)
        await cache.set(CacheKey.coin_balance(1), 10, 60)
        await cache.invalidate(CacheKey.coin_balance(1))
        assert await cache.get(CacheKey.coin_balance(1)) is None

    @pytest.mark.asyncio
    async def test_set_and_get_json(self):
        redis = AsyncMock()
        redis.get.return_value = '{"pct": 50.0}'
        cache = ProgressCache(redis)

        await cache.set(CacheKey.week_progress(1, 2), {"pct": 50.0}, 300)
        redis.setex.assert_awaited_once_with("learnpath:week_progress:2:user:1", 300, '{"pct": 50.0}')
        assert await cache.get(CacheKey.week_progress(1, 2)) == {"pct": 50.0}

    @pytest.mark.asyncio
    async def test_invalidate_deletes_all_keys(self):
        redis = AsyncMock()
        await ProgressCache(redis).invalidate(CacheKey.coin_balance(1), CacheKey.cohort_progress(1, 3))
        redis.delete.assert_awaited_once_with("learnpath:coin_balance:1", "learnpath:cohort_progress:3:user:1")

    @pytest.mark.asyncio
    async def test_redis_errors_are_swallowed(self):
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("down")
        redis.setex.side_effect = ConnectionError("down")
        redis.delete.side_effect = ConnectionError("down")
        cache = ProgressCache(redis)

        assert await cache.get(CacheKey.coin_balance(1)) is None
        await cache.set(CacheKey.coin_balance(1), 5, 60)
        await cache.invalidate(CacheKey.coin_balance(1))

    @pytest.mark.asyncio
    async def test_malformed_entry_is_a_miss(self):
        redis = AsyncMock()
        redis.get.return_value = "not json{"
        assert await ProgressCache(redis).get(CacheKey.coin_balance(1)) is None
