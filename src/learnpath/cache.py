"""Typed Redis cache keys with explicit invalidation.

Every mutating service call invalidates the keys it affects right after the
write. Redis is optional: with no client (or a failing one) reads miss and
writes are dropped, and the database stays the source of truth.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

CACHE_PREFIX = "learnpath"


class CacheKind(enum.Enum):
    COIN_BALANCE = "coin_balance"
    WEEK_PROGRESS = "week_progress"
    COHORT_PROGRESS = "cohort_progress"


@dataclass(frozen=True)
class CacheKey:
    """(kind, entity id) pair, optionally scoped to one student."""

    kind: CacheKind
    entity_id: int
    user_id: int | None = None

    def render(self) -> str:
        if self.user_id is None:
            return f"{CACHE_PREFIX}:{self.kind.value}:{self.entity_id}"
        return f"{CACHE_PREFIX}:{self.kind.value}:{self.entity_id}:user:{self.user_id}"

    @classmethod
    def coin_balance(cls, user_id: int) -> CacheKey:
        return cls(CacheKind.COIN_BALANCE, user_id)

    @classmethod
    def week_progress(cls, user_id: int, week_id: int) -> CacheKey:
        return cls(CacheKind.WEEK_PROGRESS, week_id, user_id)

    @classmethod
    def cohort_progress(cls, user_id: int, cohort_id: int) -> CacheKey:
        return cls(CacheKind.COHORT_PROGRESS, cohort_id, user_id)


class ProgressCache:
    """Thin JSON cache over an optional ``redis.asyncio.Redis`` client."""

    def __init__(self, redis: object | None) -> None:
        self.redis = redis

    async def get(self, key: CacheKey) -> Any | None:  # noqa: ANN401
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key.render())  # type: ignore[attr-defined]
        except Exception:
            logger.debug("Cache read failed for %s", key.render(), exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed cache entry %s", key.render())
            return None

    async def set(self, key: CacheKey, value: Any, ttl_seconds: int) -> None:  # noqa: ANN401
        if self.redis is None:
            return
        try:
            await self.redis.setex(key.render(), ttl_seconds, json.dumps(value, default=str))  # type: ignore[attr-defined]
        except Exception:
            logger.debug("Cache write failed for %s", key.render(), exc_info=True)

    async def invalidate(self, *keys: CacheKey) -> None:
        if self.redis is None or not keys:
            return
        try:
            await self.redis.delete(*(k.render() for k in keys))  # type: ignore[attr-defined]
        except Exception:
            logger.warning("Cache invalidation failed for %s", [k.render() for k in keys], exc_info=True)
