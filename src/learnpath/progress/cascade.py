"""Progression cascade: topic -> lesson -> module -> week.

Each ``recalc_*`` is a pure function of persisted child rows: it recounts
the children, raises the stored percentage (never lowers it, so progress
reported through ``update_progress`` survives), and completes the level
when the recount reaches 100 %. Running it twice, or from two requests at
once, converges on the same state.

``cascade_from_*`` run one vertical chain inside a SAVEPOINT. A failure
rolls back only the cascade's own writes (including any level rewards it
issued), is logged, and comes back in the ``CascadeReport``. The leaf fact
that triggered the cascade is never rolled back by it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cache import CacheKey, ProgressCache
from learnpath.coins import ledger_service
from learnpath.coins.sources import SourceRef
from learnpath.db.models import (
    Lesson,
    LessonCompletion,
    Module,
    ModuleCompletion,
    Topic,
    Week,
    WeekProgress,
)
from learnpath.progress import completion_service, queries
from learnpath.progress.queries import HUNDRED

logger = structlog.get_logger()


@dataclass
class CascadeReport:
    """Best-effort side-effect result. ``ok=False`` never undoes the leaf fact."""

    ok: bool = True
    error: str | None = None
    steps: list[str] = field(default_factory=list)
    week_completed: bool = False
    unlocked_week_id: int | None = None

    @classmethod
    def skipped(cls) -> CascadeReport:
        return cls()

    def merge(self, other: CascadeReport) -> CascadeReport:
        return CascadeReport(
            ok=self.ok and other.ok,
            error=self.error or other.error,
            steps=[*self.steps, *other.steps],
            week_completed=self.week_completed or other.week_completed,
            unlocked_week_id=self.unlocked_week_id or other.unlocked_week_id,
        )


@dataclass
class WeekRecalc:
    progress: WeekProgress | None
    completed_now: bool = False
    unlocked: WeekProgress | None = None


# ---------------------------------------------------------------------------
# Level recalculation
# ---------------------------------------------------------------------------


async def recalc_lesson(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    lesson: Lesson,
    now: datetime | None = None,
) -> LessonCompletion:
    """Recount a lesson's items; auto-complete it at 100 % with its time requirement met.

    The lesson's time is the larger of its own recorded time and the sum of
    its topics' times.
    """
    now = now or datetime.now(timezone.utc)
    record = await completion_service.start_unit(db, user_id, lesson, now)
    if record.completed_at is not None:
        return record

    completed, total = await queries.lesson_item_counts(db, user_id, lesson)
    pct = queries.percentage(completed, total, when_empty=HUNDRED)
    time_spent = max(record.time_spent_seconds, await queries.topic_time_for_lesson(db, user_id, lesson.id))

    await db.execute(
        update(LessonCompletion)
        .where(LessonCompletion.id == record.id, LessonCompletion.completed_at.is_(None))
        .values(
            completion_percentage=queries.raised_to(LessonCompletion.completion_percentage, pct),
            time_spent_seconds=time_spent,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(record)

    min_time = lesson.min_time_required_seconds or 0
    if pct >= HUNDRED and time_spent >= min_time:
        result = await completion_service.complete_unit(
            db, redis, user_id, lesson, {"method": "auto"}, now=now, cascade=False
        )
        record = result.record  # type: ignore[assignment]
    return record


async def recalc_module(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    module: Module,
    now: datetime | None = None,
) -> ModuleCompletion:
    """Recount a module's lessons; auto-complete it at 100 %."""
    now = now or datetime.now(timezone.utc)
    record = await completion_service.start_unit(db, user_id, module, now)
    if record.completed_at is not None:
        return record

    completed, total = await queries.module_item_counts(db, user_id, module)
    pct = queries.percentage(completed, total, when_empty=HUNDRED)
    time_spent = await queries.lesson_time_for_module(db, user_id, module.id)

    await db.execute(
        update(ModuleCompletion)
        .where(ModuleCompletion.id == record.id, ModuleCompletion.completed_at.is_(None))
        .values(
            completion_percentage=queries.raised_to(ModuleCompletion.completion_percentage, pct),
            time_spent_seconds=time_spent,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(record)

    if pct >= HUNDRED:
        result = await completion_service.complete_unit(
            db, redis, user_id, module, {"method": "auto"}, now=now, cascade=False
        )
        record = result.record  # type: ignore[assignment]
    return record


async def recalc_week(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week: Week,
    now: datetime | None = None,
) -> WeekRecalc:
    """Recount a week's items and, on first reaching 100 %, complete it.

    Completion is a compare-and-set on ``completed_at`` so the week reward,
    the enrollment roll-up and the next-week unlock run exactly once.
    A week with no items stays at 0 %.
    """
    from learnpath.cohorts.enrollment_service import refresh_enrollment_progress
    from learnpath.progress.unlock_service import evaluate_and_unlock_next

    now = now or datetime.now(timezone.utc)
    progress = await queries.get_week_progress(db, user_id, week.id)
    if progress is None:
        logger.info("week_recalc_skipped", user_id=user_id, week_id=week.id, reason="no_progress_row")
        return WeekRecalc(progress=None)
    if progress.completed_at is not None:
        return WeekRecalc(progress=progress)

    completed, total = await queries.week_item_counts(db, user_id, week)
    pct = queries.percentage(completed, total, when_empty=Decimal("0.00"))

    if pct < HUNDRED:
        await db.execute(
            update(WeekProgress)
            .where(WeekProgress.id == progress.id, WeekProgress.completed_at.is_(None))
            .values(completion_percentage=pct)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(progress)
        await _invalidate_week(redis, user_id, week)
        await refresh_enrollment_progress(db, redis, user_id, week.cohort_id, now=now)
        return WeekRecalc(progress=progress)

    result = await db.execute(
        update(WeekProgress)
        .where(WeekProgress.id == progress.id, WeekProgress.completed_at.is_(None))
        .values(completion_percentage=HUNDRED, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(progress)
    if result.rowcount != 1:
        return WeekRecalc(progress=progress)

    logger.info("week_completed", user_id=user_id, week_id=week.id, week_number=week.week_number)
    if week.completion_coin_reward > 0:
        await ledger_service.award(
            db,
            redis,
            user_id,
            week.completion_coin_reward,
            SourceRef.week_completion(week.id),
            description=f"Completed Week {week.week_number}",
            now=now,
        )

    await _invalidate_week(redis, user_id, week)
    await refresh_enrollment_progress(db, redis, user_id, week.cohort_id, now=now)
    unlocked = await evaluate_and_unlock_next(db, redis, user_id, week, now=now)
    return WeekRecalc(progress=progress, completed_now=True, unlocked=unlocked)


async def _invalidate_week(redis: object | None, user_id: int, week: Week) -> None:
    await ProgressCache(redis).invalidate(
        CacheKey.week_progress(user_id, week.id),
        CacheKey.cohort_progress(user_id, week.cohort_id),
    )


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


async def _week_step(
    db: AsyncSession, redis: object | None, user_id: int, week_id: int, now: datetime, report: CascadeReport
) -> None:
    week = await queries.get_or_404(db, Week, week_id)
    outcome = await recalc_week(db, redis, user_id, week, now)
    if outcome.progress is None:
        report.steps.append(f"week:{week_id}:skipped")
        return
    report.steps.append(f"week:{week_id}:{outcome.progress.completion_percentage}")
    report.week_completed = outcome.completed_now
    if outcome.unlocked is not None:
        report.unlocked_week_id = outcome.unlocked.week_id


async def _run(
    db: AsyncSession,
    chain: str,
    user_id: int,
    report: CascadeReport,
    body,  # noqa: ANN001
) -> CascadeReport:
    try:
        async with db.begin_nested():
            await body()
    except Exception as exc:
        logger.error("cascade_failed", chain=chain, user_id=user_id, steps=report.steps, error=str(exc), exc_info=True)
        return CascadeReport(ok=False, error=str(exc) or type(exc).__name__, steps=report.steps)
    return report


async def cascade_from_week(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    week_id: int,
    now: datetime | None = None,
) -> CascadeReport:
    now = now or datetime.now(timezone.utc)
    report = CascadeReport()

    async def body() -> None:
        await _week_step(db, redis, user_id, week_id, now, report)

    return await _run(db, f"week:{week_id}", user_id, report, body)


async def cascade_from_module(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    module: Module,
    now: datetime | None = None,
    include_module: bool = True,
) -> CascadeReport:
    now = now or datetime.now(timezone.utc)
    module_id, week_id = module.id, module.week_id
    report = CascadeReport()

    async def body() -> None:
        if include_module:
            record = await recalc_module(db, redis, user_id, await queries.get_or_404(db, Module, module_id), now)
            report.steps.append(f"module:{module_id}:{record.completion_percentage}")
        await _week_step(db, redis, user_id, week_id, now, report)

    return await _run(db, f"module:{module_id}", user_id, report, body)


async def cascade_from_lesson(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    lesson: Lesson,
    now: datetime | None = None,
    include_lesson: bool = True,
) -> CascadeReport:
    """Lesson (optionally) -> module -> week."""
    now = now or datetime.now(timezone.utc)
    lesson_id, module_id = lesson.id, lesson.module_id
    report = CascadeReport()

    async def body() -> None:
        if include_lesson:
            record = await recalc_lesson(db, redis, user_id, await queries.get_or_404(db, Lesson, lesson_id), now)
            report.steps.append(f"lesson:{lesson_id}:{record.completion_percentage}")
        module = await queries.get_or_404(db, Module, module_id)
        module_record = await recalc_module(db, redis, user_id, module, now)
        report.steps.append(f"module:{module_id}:{module_record.completion_percentage}")
        await _week_step(db, redis, user_id, module.week_id, now, report)

    return await _run(db, f"lesson:{lesson_id}", user_id, report, body)


async def cascade_from_topic(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    topic: Topic,
    now: datetime | None = None,
) -> CascadeReport:
    """Recompute the single chain above a topic."""
    now = now or datetime.now(timezone.utc)
    topic_id, lesson_id = topic.id, topic.lesson_id
    report = CascadeReport()

    async def body() -> None:
        lesson = await queries.get_or_404(db, Lesson, lesson_id)
        lesson_record = await recalc_lesson(db, redis, user_id, lesson, now)
        report.steps.append(f"lesson:{lesson_id}:{lesson_record.completion_percentage}")
        module = await queries.get_or_404(db, Module, lesson.module_id)
        module_record = await recalc_module(db, redis, user_id, module, now)
        report.steps.append(f"module:{module.id}:{module_record.completion_percentage}")
        await _week_step(db, redis, user_id, module.week_id, now, report)

    return await _run(db, f"topic:{topic_id}", user_id, report, body)
