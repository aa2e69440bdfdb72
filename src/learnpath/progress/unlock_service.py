"""Week unlock evaluation.

A week N > 1 unlocks when week N-1 is completed and every criterion of its
rule document holds, checked in order:

1. coin threshold (cached balance >= ``min_coins``)
2. each ``required_completions`` entry, counted within the cohort and
   optionally within one week number
3. ``min_previous_week_progress``
4. drip: ``today >= cohort.start_date + drip_days`` (skipped when 0)

Week 1 always unlocks. ``unlock_week`` re-checks at call time and never
trusts a caller's earlier answer.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cache import CacheKey, ProgressCache
from learnpath.coins import ledger_service
from learnpath.db.models import Cohort, Week, WeekProgress
from learnpath.errors import UnlockDeniedError
from learnpath.progress import queries
from learnpath.progress.rules import RequiredCompletion, RequirementType, UnlockRules

logger = logging.getLogger(__name__)

_COUNTERS = {
    RequirementType.TOPICS: queries.count_completed_topics,
    RequirementType.QUIZZES: queries.count_passed_quizzes,
    RequirementType.ASSIGNMENTS: queries.count_approved_assignments,
    RequirementType.LIVE_CLASSES: queries.count_attended_live_classes,
}


def _today(now: datetime | None) -> date:
    return (now or datetime.now(timezone.utc)).date()


async def _drip_date(db: AsyncSession, week: Week) -> date | None:
    """Date the week becomes available, or None when drip does not apply."""
    if week.drip_days <= 0:
        return None
    cohort = await db.get(Cohort, week.cohort_id)
    if cohort is None or cohort.start_date is None:
        return None
    return cohort.start_date + timedelta(days=week.drip_days)


async def _completion_count(db: AsyncSession, user_id: int, week: Week, requirement: RequiredCompletion) -> int | None:
    """Current count for a requirement; None for unrecognized types."""
    kind = requirement.kind
    if kind is None:
        return None
    week_ids = await queries.week_ids_in_scope(db, week.cohort_id, requirement.week_number)
    return await _COUNTERS[kind](db, user_id, week_ids)


async def meets_unlock_requirements(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    now: datetime | None = None,
) -> bool:
    rules = UnlockRules.from_document(week.unlock_rules)

    if rules.min_coins is not None:
        balance = await ledger_service.get_cached_balance(db, redis, user_id)
        if balance < rules.min_coins:
            return False

    for requirement in rules.required_completions:
        count = await _completion_count(db, user_id, week, requirement)
        if count is not None and count < requirement.count:
            return False

    if rules.min_previous_week_progress is not None:
        previous = await queries.sibling_week(db, week, -1)
        if previous is not None:
            progress = await queries.get_week_progress(db, user_id, previous.id)
            if progress is None or progress.completion_percentage < rules.min_previous_week_progress:
                return False

    drip_date = await _drip_date(db, week)
    return not (drip_date is not None and _today(now) < drip_date)


async def can_unlock(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    now: datetime | None = None,
) -> bool:
    if week.week_number == 1:
        return True

    previous = await queries.sibling_week(db, week, -1)
    if previous is None:
        return False
    previous_progress = await queries.get_week_progress(db, user_id, previous.id)
    if previous_progress is None or previous_progress.completed_at is None:
        return False

    return await meets_unlock_requirements(db, redis, user_id, week, now)


async def unlock_week(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    now: datetime | None = None,
) -> WeekProgress:
    """Flip ``is_unlocked``. Idempotent; raises UnlockDeniedError when not allowed."""
    progress = await queries.get_week_progress(db, user_id, week.id)
    if progress is None:
        msg = f"Progress record not found for user {user_id} and week {week.id}"
        raise UnlockDeniedError(msg)
    if progress.is_unlocked:
        return progress

    if not await can_unlock(db, redis, user_id, week, now):
        msg = f"Cannot unlock week {week.week_number}. Requirements not met."
        raise UnlockDeniedError(msg)

    return await _mark_unlocked(db, redis, user_id, week, progress, now)


async def _mark_unlocked(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    progress: WeekProgress,
    now: datetime | None,
) -> WeekProgress:
    await db.execute(
        update(WeekProgress)
        .where(WeekProgress.id == progress.id, WeekProgress.is_unlocked.is_(False))
        .values(is_unlocked=True, unlocked_at=now or datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(progress)
    await ProgressCache(redis).invalidate(
        CacheKey.week_progress(user_id, week.id),
        CacheKey.cohort_progress(user_id, week.cohort_id),
    )
    logger.info("Unlocked week %d (id=%d) for user %d", week.week_number, week.id, user_id)
    return progress


async def evaluate_and_unlock_next(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    current_week: Week,
    now: datetime | None = None,
) -> WeekProgress | None:
    """Unlock the week after ``current_week`` if allowed; None otherwise."""
    next_week = await queries.sibling_week(db, current_week, 1)
    if next_week is None:
        return None
    if not await can_unlock(db, redis, user_id, next_week, now):
        logger.debug("Week %d not yet unlockable for user %d", next_week.week_number, user_id)
        return None
    return await unlock_week(db, redis, user_id, next_week, now)


async def bulk_unlock_week(
    db: AsyncSession,
    redis: object | None,
    week: Week,
    user_ids: list[int],
    force: bool = False,
    now: datetime | None = None,
) -> dict[int, str]:
    """Administrative unlock for many students. Returns user_id -> outcome.

    With ``force`` the rule check is skipped (instructor override); the
    progress row must still exist.
    """
    outcomes: dict[int, str] = {}
    for user_id in user_ids:
        progress = await queries.get_week_progress(db, user_id, week.id)
        if progress is None:
            outcomes[user_id] = "error: not enrolled"
            continue
        if progress.is_unlocked:
            outcomes[user_id] = "already_unlocked"
            continue
        if force:
            await _mark_unlocked(db, redis, user_id, week, progress, now)
            outcomes[user_id] = "unlocked"
            continue
        try:
            await unlock_week(db, redis, user_id, week, now)
        except UnlockDeniedError as exc:
            outcomes[user_id] = f"error: {exc.message}"
        else:
            outcomes[user_id] = "unlocked"
    return outcomes


async def get_unlock_requirements_summary(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Itemized, read-only view of every criterion for UI display."""
    progress = await queries.get_week_progress(db, user_id, week.id)
    is_unlocked = bool(progress and progress.is_unlocked)
    base = {"week_id": week.id, "week_number": week.week_number, "is_unlocked": is_unlocked}

    if week.week_number == 1:
        return {**base, "can_unlock": True, "requirements": [], "message": "Week 1 is automatically unlocked"}

    rules = UnlockRules.from_document(week.unlock_rules)
    items: list[dict[str, Any]] = []

    previous = await queries.sibling_week(db, week, -1)
    previous_progress = await queries.get_week_progress(db, user_id, previous.id) if previous else None
    if previous is not None:
        items.append({
            "type": "previous_week",
            "description": f"Complete Week {previous.week_number}",
            "met": previous_progress is not None and previous_progress.completed_at is not None,
            "current": float(previous_progress.completion_percentage) if previous_progress else 0.0,
            "required": 100.0,
        })
    else:
        items.append({
            "type": "previous_week",
            "description": f"Week {week.week_number - 1} does not exist",
            "met": False,
            "current": 0.0,
            "required": 100.0,
        })

    if rules.min_coins is not None:
        balance = await ledger_service.get_cached_balance(db, redis, user_id)
        items.append({
            "type": "coins",
            "description": f"Earn {rules.min_coins} coins",
            "met": balance >= rules.min_coins,
            "current": balance,
            "required": rules.min_coins,
        })

    for requirement in rules.required_completions:
        count = await _completion_count(db, user_id, week, requirement)
        items.append({
            "type": requirement.type,
            "description": requirement.describe(),
            "met": count is None or count >= requirement.count,
            "current": count,
            "required": requirement.count,
        })

    if rules.min_previous_week_progress is not None and previous is not None:
        current_pct = previous_progress.completion_percentage if previous_progress else 0
        items.append({
            "type": "min_previous_week_progress",
            "description": f"Reach {rules.min_previous_week_progress}% in Week {previous.week_number}",
            "met": previous_progress is not None and current_pct >= rules.min_previous_week_progress,
            "current": float(current_pct),
            "required": float(rules.min_previous_week_progress),
        })

    drip_date = await _drip_date(db, week)
    if drip_date is not None:
        items.append({
            "type": "drip",
            "description": f"Available on {drip_date.strftime('%b %d, %Y')}",
            "met": _today(now) >= drip_date,
            "current": _today(now).isoformat(),
            "required": drip_date.isoformat(),
        })

    can = all(item["met"] for item in items)
    return {
        **base,
        "can_unlock": can,
        "requirements": items,
        "message": "All requirements met" if can else "Some requirements not yet met",
    }
