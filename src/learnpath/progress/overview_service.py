"""Student-facing progress overviews, cached per (student, week/cohort).

Entries are invalidated by the cascade, the unlock evaluator and the
enrollment service whenever the underlying rows change.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cache import CacheKey, ProgressCache
from learnpath.cohorts.enrollment_service import get_enrollment
from learnpath.config import get_settings
from learnpath.db.models import Cohort, Week
from learnpath.errors import NotFoundError
from learnpath.progress import queries


async def get_week_overview(db: AsyncSession, redis: object | None, user_id: int, week: Week) -> dict[str, Any]:
    cache = ProgressCache(redis)
    key = CacheKey.week_progress(user_id, week.id)
    cached = await cache.get(key)
    if cached is not None:
        return cached

    progress = await queries.get_week_progress(db, user_id, week.id)
    if progress is None:
        msg = f"User {user_id} has no progress for week {week.id}"
        raise NotFoundError(msg)
    completed, total = await queries.week_item_counts(db, user_id, week)
    overview = {
        "week_id": week.id,
        "week_number": week.week_number,
        "title": week.title,
        "is_unlocked": progress.is_unlocked,
        "is_completed": progress.completed_at is not None,
        "completion_percentage": float(progress.completion_percentage),
        "completed_items": completed,
        "total_items": total,
        "unlocked_at": progress.unlocked_at.isoformat() if progress.unlocked_at else None,
        "completed_at": progress.completed_at.isoformat() if progress.completed_at else None,
    }
    await cache.set(key, overview, get_settings().progress_cache_ttl_seconds)
    return overview


async def get_cohort_overview(db: AsyncSession, redis: object | None, user_id: int, cohort: Cohort) -> dict[str, Any]:
    cache = ProgressCache(redis)
    key = CacheKey.cohort_progress(user_id, cohort.id)
    cached = await cache.get(key)
    if cached is not None:
        return cached

    enrollment = await get_enrollment(db, user_id, cohort.id)
    if enrollment is None:
        msg = f"User {user_id} is not enrolled in cohort {cohort.id}"
        raise NotFoundError(msg)

    weeks = []
    for week in await queries.weeks_for_cohort(db, cohort.id):
        progress = await queries.get_week_progress(db, user_id, week.id)
        weeks.append({
            "week_id": week.id,
            "week_number": week.week_number,
            "title": week.title,
            "is_unlocked": bool(progress and progress.is_unlocked),
            "is_completed": bool(progress and progress.completed_at is not None),
            "completion_percentage": float(progress.completion_percentage) if progress else 0.0,
        })

    overview = {
        "cohort_id": cohort.id,
        "status": enrollment.status,
        "completion_percentage": float(enrollment.completion_percentage),
        "weeks": weeks,
    }
    await cache.set(key, overview, get_settings().progress_cache_ttl_seconds)
    return overview
