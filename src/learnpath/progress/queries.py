"""Read-only lookups shared by the completion, cascade and unlock services.

Every count here is recomputed from persisted child rows. Nothing keeps an
incremental counter, so running any of them twice (or concurrently) yields
the same answer.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.db.models import (
    Assignment,
    AssignmentSubmission,
    Lesson,
    LessonBlockCompletion,
    LessonCompletion,
    LiveAttendance,
    LiveClass,
    Module,
    ModuleCompletion,
    Quiz,
    QuizAttempt,
    Topic,
    TopicCompletion,
    Week,
    WeekProgress,
)
from learnpath.errors import NotFoundError

HUNDRED = Decimal("100")
_CENT = Decimal("0.01")

# Lesson blocks tracked through lesson_block_completions.
GRADED_BLOCK_TYPES = ("quiz", "assignment")
LIVE_BLOCK_TYPE = "live"


def percentage(completed: int, total: int, when_empty: Decimal) -> Decimal:
    """completed/total as a two-decimal percentage in [0, 100]."""
    if total <= 0:
        return when_empty
    value = (Decimal(min(completed, total)) * HUNDRED / Decimal(total)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return min(value, HUNDRED)


def clamp_percentage(value: float | Decimal | int) -> Decimal:
    pct = Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return max(Decimal("0.00"), min(pct, HUNDRED))


def raised_to(column: Any, pct: Decimal) -> Any:  # noqa: ANN401
    """SET expression that moves a stored percentage up to ``pct``, never down."""
    return case((column < pct, pct), else_=column)


async def get_or_404(db: AsyncSession, model: Any, entity_id: int) -> Any:  # noqa: ANN401
    obj = await db.get(model, entity_id)
    if obj is None:
        msg = f"{model.__name__} {entity_id} not found"
        raise NotFoundError(msg)
    return obj


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


async def week_id_for(db: AsyncSession, unit: Topic | Lesson | Module) -> int:
    """Resolve the week that owns a topic, lesson or module."""
    if isinstance(unit, Module):
        return unit.week_id
    if isinstance(unit, Lesson):
        query = select(Module.week_id).where(Module.id == unit.module_id)
    else:
        query = (
            select(Module.week_id)
            .join(Lesson, Lesson.module_id == Module.id)
            .where(Lesson.id == unit.lesson_id)
        )
    week_id = (await db.execute(query)).scalar_one_or_none()
    if week_id is None:
        msg = f"No week found for {type(unit).__name__} {unit.id}"
        raise NotFoundError(msg)
    return week_id


async def get_week_progress(db: AsyncSession, user_id: int, week_id: int) -> WeekProgress | None:
    result = await db.execute(
        select(WeekProgress)
        .where(WeekProgress.user_id == user_id, WeekProgress.week_id == week_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def is_week_unlocked(db: AsyncSession, user_id: int, week_id: int) -> bool:
    progress = await get_week_progress(db, user_id, week_id)
    return progress is not None and progress.is_unlocked


async def sibling_week(db: AsyncSession, week: Week, offset: int) -> Week | None:
    """The week ``offset`` positions away in the same cohort (-1 previous, +1 next)."""
    result = await db.execute(
        select(Week).where(Week.cohort_id == week.cohort_id, Week.week_number == week.week_number + offset)
    )
    return result.scalar_one_or_none()


async def weeks_for_cohort(db: AsyncSession, cohort_id: int) -> list[Week]:
    result = await db.execute(select(Week).where(Week.cohort_id == cohort_id).order_by(Week.week_number))
    return list(result.scalars().all())


async def lessons_embedding_live_class(db: AsyncSession, live_class: LiveClass) -> list[Lesson]:
    """Lessons in the class's week that carry a live block pointing at it."""
    result = await db.execute(
        select(Lesson).join(Module, Module.id == Lesson.module_id).where(Module.week_id == live_class.week_id)
    )
    return [
        lesson
        for lesson in result.scalars().all()
        if any(_live_class_id(b) == live_class.id for b in lesson.blocks_by_type(LIVE_BLOCK_TYPE))
    ]


def _live_class_id(block: dict[str, Any]) -> int | None:
    raw = (block.get("payload") or {}).get("liveClassId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def graded_block_ids(lesson: Lesson) -> list[str]:
    """Ids of the quiz/assignment blocks of a lesson. Blocks without an id are skipped."""
    ids: list[str] = []
    for block_type in GRADED_BLOCK_TYPES:
        ids.extend(str(b["id"]) for b in lesson.blocks_by_type(block_type) if b.get("id") is not None)
    return ids


def live_class_ids(lesson: Lesson) -> list[int]:
    return [cid for cid in (_live_class_id(b) for b in lesson.blocks_by_type(LIVE_BLOCK_TYPE)) if cid is not None]


# ---------------------------------------------------------------------------
# Per-level item counts: (completed, total)
# ---------------------------------------------------------------------------


async def _count(db: AsyncSession, query: Any) -> int:  # noqa: ANN401
    return (await db.execute(query)).scalar() or 0


async def lesson_item_counts(db: AsyncSession, user_id: int, lesson: Lesson) -> tuple[int, int]:
    """Topics + graded blocks + live blocks of one lesson."""
    topic_ids = select(Topic.id).where(Topic.lesson_id == lesson.id)
    total_topics = await _count(db, select(func.count()).select_from(Topic).where(Topic.lesson_id == lesson.id))
    done_topics = await _count(
        db,
        select(func.count())
        .select_from(TopicCompletion)
        .where(
            TopicCompletion.user_id == user_id,
            TopicCompletion.topic_id.in_(topic_ids),
            TopicCompletion.completed_at.is_not(None),
        ),
    )

    block_ids = graded_block_ids(lesson)
    done_blocks = 0
    if block_ids:
        done_blocks = await _count(
            db,
            select(func.count(distinct(LessonBlockCompletion.block_id))).where(
                LessonBlockCompletion.user_id == user_id,
                LessonBlockCompletion.lesson_id == lesson.id,
                LessonBlockCompletion.block_id.in_(block_ids),
                LessonBlockCompletion.passed.is_(True),
            ),
        )

    live_ids = live_class_ids(lesson)
    done_live = 0
    if live_ids:
        done_live = await _count(
            db,
            select(func.count(distinct(LiveAttendance.live_class_id))).where(
                LiveAttendance.user_id == user_id,
                LiveAttendance.live_class_id.in_(live_ids),
                LiveAttendance.attended.is_(True),
            ),
        )

    total = total_topics + len(block_ids) + len(set(live_ids))
    return done_topics + done_blocks + done_live, total


async def topic_time_for_lesson(db: AsyncSession, user_id: int, lesson_id: int) -> int:
    return await _count(
        db,
        select(func.coalesce(func.sum(TopicCompletion.time_spent_seconds), 0))
        .join(Topic, Topic.id == TopicCompletion.topic_id)
        .where(TopicCompletion.user_id == user_id, Topic.lesson_id == lesson_id),
    )


async def module_item_counts(db: AsyncSession, user_id: int, module: Module) -> tuple[int, int]:
    total = await _count(db, select(func.count()).select_from(Lesson).where(Lesson.module_id == module.id))
    done = await _count(
        db,
        select(func.count())
        .select_from(LessonCompletion)
        .join(Lesson, Lesson.id == LessonCompletion.lesson_id)
        .where(
            LessonCompletion.user_id == user_id,
            Lesson.module_id == module.id,
            LessonCompletion.completed_at.is_not(None),
        ),
    )
    return done, total


async def lesson_time_for_module(db: AsyncSession, user_id: int, module_id: int) -> int:
    return await _count(
        db,
        select(func.coalesce(func.sum(LessonCompletion.time_spent_seconds), 0))
        .join(Lesson, Lesson.id == LessonCompletion.lesson_id)
        .where(LessonCompletion.user_id == user_id, Lesson.module_id == module_id),
    )


async def week_item_counts(db: AsyncSession, user_id: int, week: Week) -> tuple[int, int]:
    """Modules + week-scoped quizzes, assignments and live classes."""
    total_modules = await _count(db, select(func.count()).select_from(Module).where(Module.week_id == week.id))
    done_modules = await _count(
        db,
        select(func.count())
        .select_from(ModuleCompletion)
        .join(Module, Module.id == ModuleCompletion.module_id)
        .where(
            ModuleCompletion.user_id == user_id,
            Module.week_id == week.id,
            ModuleCompletion.completed_at.is_not(None),
        ),
    )

    total_quizzes = await _count(db, select(func.count()).select_from(Quiz).where(Quiz.week_id == week.id))
    done_quizzes = await count_passed_quizzes(db, user_id, week_ids=[week.id])

    total_assignments = await _count(
        db, select(func.count()).select_from(Assignment).where(Assignment.week_id == week.id)
    )
    done_assignments = await count_approved_assignments(db, user_id, week_ids=[week.id])

    total_live = await _count(db, select(func.count()).select_from(LiveClass).where(LiveClass.week_id == week.id))
    done_live = await count_attended_live_classes(db, user_id, week_ids=[week.id])

    done = done_modules + done_quizzes + done_assignments + done_live
    total = total_modules + total_quizzes + total_assignments + total_live
    return done, total


# ---------------------------------------------------------------------------
# Completion counts used by unlock rules (scoped to a set of weeks)
# ---------------------------------------------------------------------------


async def week_ids_in_scope(db: AsyncSession, cohort_id: int, week_number: int | None) -> list[int]:
    query = select(Week.id).where(Week.cohort_id == cohort_id)
    if week_number is not None:
        query = query.where(Week.week_number == week_number)
    return list((await db.execute(query)).scalars().all())


async def count_completed_topics(db: AsyncSession, user_id: int, week_ids: list[int]) -> int:
    if not week_ids:
        return 0
    return await _count(
        db,
        select(func.count())
        .select_from(TopicCompletion)
        .join(Topic, Topic.id == TopicCompletion.topic_id)
        .join(Lesson, Lesson.id == Topic.lesson_id)
        .join(Module, Module.id == Lesson.module_id)
        .where(
            TopicCompletion.user_id == user_id,
            TopicCompletion.completed_at.is_not(None),
            Module.week_id.in_(week_ids),
        ),
    )


async def count_passed_quizzes(db: AsyncSession, user_id: int, week_ids: list[int]) -> int:
    """Distinct quizzes with at least one passing attempt."""
    if not week_ids:
        return 0
    return await _count(
        db,
        select(func.count(distinct(QuizAttempt.quiz_id)))
        .join(Quiz, Quiz.id == QuizAttempt.quiz_id)
        .where(QuizAttempt.user_id == user_id, QuizAttempt.passed.is_(True), Quiz.week_id.in_(week_ids)),
    )


async def count_approved_assignments(db: AsyncSession, user_id: int, week_ids: list[int]) -> int:
    if not week_ids:
        return 0
    return await _count(
        db,
        select(func.count(distinct(AssignmentSubmission.assignment_id)))
        .join(Assignment, Assignment.id == AssignmentSubmission.assignment_id)
        .where(
            AssignmentSubmission.user_id == user_id,
            AssignmentSubmission.status == "approved",
            Assignment.week_id.in_(week_ids),
        ),
    )


async def count_attended_live_classes(db: AsyncSession, user_id: int, week_ids: list[int]) -> int:
    if not week_ids:
        return 0
    return await _count(
        db,
        select(func.count(distinct(LiveAttendance.live_class_id)))
        .join(LiveClass, LiveClass.id == LiveAttendance.live_class_id)
        .where(
            LiveAttendance.user_id == user_id,
            LiveAttendance.attended.is_(True),
            LiveClass.week_id.in_(week_ids),
        ),
    )
