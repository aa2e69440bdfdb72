"""Completion records for topics, lessons and modules.

One record per (student, unit), enforced by a UNIQUE constraint on each
completion table. The state machine per unit is::

    not_started -> in_progress -> eligible -> completed (terminal)

``reset_unit`` is the only way back and deletes the record outright.

The first completion of a unit is an atomic compare-and-set
(``UPDATE ... WHERE completed_at IS NULL``): of two racing requests exactly
one sees rowcount 1 and issues the coin reward.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.coins import ledger_service
from learnpath.coins.sources import SourceRef
from learnpath.db.models import (
    Enrollment,
    Lesson,
    LessonCompletion,
    Module,
    ModuleCompletion,
    Topic,
    TopicCompletion,
    Week,
)
from learnpath.db.upsert import insert_for
from learnpath.errors import EligibilityError
from learnpath.progress import queries
from learnpath.progress.queries import HUNDRED

logger = logging.getLogger(__name__)

WEEK_LOCKED_MESSAGE = "Week must be unlocked to access this content"

ContentUnit = Topic | Lesson | Module
CompletionRecord = TopicCompletion | LessonCompletion | ModuleCompletion


class UnitKind(str, enum.Enum):
    TOPIC = "topic"
    LESSON = "lesson"
    MODULE = "module"


class CompletionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ELIGIBLE = "eligible"
    COMPLETED = "completed"


@dataclass(frozen=True)
class _UnitTable:
    kind: UnitKind
    record_model: Any
    fk: str
    source: Callable[[int], SourceRef]

    def fk_column(self) -> Any:  # noqa: ANN401
        return getattr(self.record_model, self.fk)


_REGISTRY: dict[type, _UnitTable] = {
    Topic: _UnitTable(UnitKind.TOPIC, TopicCompletion, "topic_id", SourceRef.topic),
    Lesson: _UnitTable(UnitKind.LESSON, LessonCompletion, "lesson_id", SourceRef.lesson),
    Module: _UnitTable(UnitKind.MODULE, ModuleCompletion, "module_id", SourceRef.module),
}


def _table_for(unit: ContentUnit) -> _UnitTable:
    try:
        return _REGISTRY[type(unit)]
    except KeyError:
        msg = f"Unsupported content unit: {type(unit).__name__}"
        raise TypeError(msg) from None


@dataclass
class CompletionResult:
    """Primary outcome of ``complete_unit`` plus its best-effort cascade report."""

    record: CompletionRecord
    already_completed: bool = False
    coins_awarded: int = 0
    cascade: Any = field(default=None)  # CascadeReport; typed loosely to avoid an import cycle


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _record_query(user_id: int, unit: ContentUnit) -> Any:  # noqa: ANN401
    table = _table_for(unit)
    return (
        select(table.record_model)
        .where(table.record_model.user_id == user_id, table.fk_column() == unit.id)
        .execution_options(populate_existing=True)
    )


async def get_record(db: AsyncSession, user_id: int, unit: ContentUnit) -> CompletionRecord | None:
    return (await db.execute(_record_query(user_id, unit))).scalar_one_or_none()


async def has_completed(db: AsyncSession, user_id: int, unit: ContentUnit) -> bool:
    record = await get_record(db, user_id, unit)
    return record is not None and record.completed_at is not None


async def start_unit(
    db: AsyncSession,
    user_id: int,
    unit: ContentUnit,
    now: datetime | None = None,
) -> CompletionRecord:
    """Idempotent first touch. Returns the existing record unchanged if present."""
    table = _table_for(unit)
    now = now or datetime.now(timezone.utc)
    stmt = (
        insert_for(db, table.record_model)
        .values(
            user_id=user_id,
            started_at=now,
            time_spent_seconds=0,
            completion_percentage=Decimal("0"),
            coins_awarded=0,
            **{table.fk: unit.id},
        )
        .on_conflict_do_nothing(index_elements=["user_id", table.fk])
    )
    await db.execute(stmt)
    return (await db.execute(_record_query(user_id, unit))).scalar_one()


async def update_progress(
    db: AsyncSession,
    user_id: int,
    unit: ContentUnit,
    percentage: float | Decimal | int,
    extra: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> CompletionRecord:
    """Record partial progress on an uncompleted unit.

    The stored percentage only ever moves up. ``extra`` may carry
    ``time_spent_seconds`` (added to the running total) and, for topics,
    ``last_position_seconds``; other keys are merged into completion_data.
    """
    table = _table_for(unit)
    record = await start_unit(db, user_id, unit, now)
    if record.completed_at is not None:
        return record

    extra = dict(extra or {})
    pct = queries.clamp_percentage(percentage)
    added_time = max(0, int(extra.pop("time_spent_seconds", 0) or 0))
    last_position = extra.pop("last_position_seconds", None)

    model = table.record_model
    values: dict[str, Any] = {
        "completion_percentage": queries.raised_to(model.completion_percentage, pct),
        "time_spent_seconds": model.time_spent_seconds + added_time,
    }
    if last_position is not None and table.kind is UnitKind.TOPIC:
        values["last_position_seconds"] = max(0, int(last_position))
    if extra:
        values["completion_data"] = {**(record.completion_data or {}), **extra}

    await db.execute(
        update(model)
        .where(model.id == record.id, model.completed_at.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(record)
    return record


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


async def _eligibility_failures(
    db: AsyncSession,
    user_id: int,
    unit: ContentUnit,
    record: CompletionRecord | None,
    extra_time: int = 0,
) -> list[str]:
    failures: list[str] = []
    week_id = await queries.week_id_for(db, unit)
    if not await queries.is_week_unlocked(db, user_id, week_id):
        return [WEEK_LOCKED_MESSAGE]

    spent = (record.time_spent_seconds if record else 0) + extra_time

    if isinstance(unit, Topic):
        if unit.min_time_required_seconds and spent < unit.min_time_required_seconds:
            failures.append(f"Minimum time of {unit.min_time_required_seconds} seconds not reached")
        prerequisites = (unit.completion_requirements or {}).get("prerequisite_topics") or []
        if prerequisites:
            done = await db.execute(
                select(TopicCompletion.topic_id).where(
                    TopicCompletion.user_id == user_id,
                    TopicCompletion.topic_id.in_([int(t) for t in prerequisites]),
                    TopicCompletion.completed_at.is_not(None),
                )
            )
            if len(set(done.scalars().all())) < len({int(t) for t in prerequisites}):
                failures.append("Prerequisite topics must be completed first")
    elif isinstance(unit, Lesson):
        completed, total = await queries.lesson_item_counts(db, user_id, unit)
        if completed < total:
            failures.append("Lesson requirements not met")
        if unit.min_time_required_seconds and spent < unit.min_time_required_seconds:
            failures.append(f"Minimum time of {unit.min_time_required_seconds} seconds not reached")
    else:
        completed, total = await queries.module_item_counts(db, user_id, unit)
        if completed < total:
            failures.append("All lessons in the module must be completed first")
    return failures


async def get_state(db: AsyncSession, user_id: int, unit: ContentUnit) -> CompletionState:
    record = await get_record(db, user_id, unit)
    if record is None:
        return CompletionState.NOT_STARTED
    if record.completed_at is not None:
        return CompletionState.COMPLETED
    if await _eligibility_failures(db, user_id, unit, record):
        return CompletionState.IN_PROGRESS
    return CompletionState.ELIGIBLE


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


async def complete_unit(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    unit: ContentUnit,
    completion_data: dict[str, Any] | None = None,
    now: datetime | None = None,
    cascade: bool = True,
) -> CompletionResult:
    """Mark a unit completed, reward it once, then cascade upward.

    Raises EligibilityError when preconditions fail. Completing an already
    completed unit is a no-op that reports ``already_completed``.
    """
    from learnpath.progress.cascade import CascadeReport, cascade_from_lesson, cascade_from_topic, cascade_from_week

    table = _table_for(unit)
    now = now or datetime.now(timezone.utc)
    completion_data = dict(completion_data or {})

    record = await get_record(db, user_id, unit)
    if record is not None and record.completed_at is not None:
        return CompletionResult(record=record, already_completed=True, cascade=CascadeReport.skipped())

    extra_time = max(0, int(completion_data.pop("time_spent_seconds", 0) or 0))
    failures = await _eligibility_failures(db, user_id, unit, record, extra_time)
    if failures:
        raise EligibilityError(failures[0])

    if record is None:
        record = await start_unit(db, user_id, unit, now)

    model = table.record_model
    reward = max(0, unit.coin_reward or 0)
    result = await db.execute(
        update(model)
        .where(model.id == record.id, model.completed_at.is_(None))
        .values(
            completed_at=now,
            completion_percentage=HUNDRED,
            time_spent_seconds=model.time_spent_seconds + extra_time,
            completion_data={**(record.completion_data or {}), **completion_data},
            coins_awarded=reward,
            **({"completion_method": completion_data.get("method", "manual")} if table.kind is UnitKind.TOPIC else {}),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(record)
    if result.rowcount != 1:
        logger.info("%s %d already completed by user %d (concurrent request)", table.kind.value, unit.id, user_id)
        return CompletionResult(record=record, already_completed=True, cascade=CascadeReport.skipped())

    coins = 0
    source = table.source(unit.id)
    if reward > 0 and not await ledger_service.has_earned(db, user_id, source):
        await ledger_service.award(
            db,
            redis,
            user_id,
            reward,
            source,
            description=f"Completed {table.kind.value}: {unit.title}",
            now=now,
        )
        coins = reward

    logger.info("User %d completed %s %d (+%d coins)", user_id, table.kind.value, unit.id, coins)

    report = CascadeReport.skipped()
    if cascade:
        if isinstance(unit, Topic):
            report = await cascade_from_topic(db, redis, user_id, unit, now=now)
        elif isinstance(unit, Lesson):
            report = await cascade_from_lesson(db, redis, user_id, unit, now=now, include_lesson=False)
        else:
            week_id = await queries.week_id_for(db, unit)
            report = await cascade_from_week(db, redis, user_id, week_id, now=now)
        if not report.ok:
            await db.refresh(record)

    return CompletionResult(record=record, coins_awarded=coins, cascade=report)


async def reset_unit(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    unit: ContentUnit,
    now: datetime | None = None,
) -> Any:  # noqa: ANN401
    """Administrative reset: delete the record and re-run the cascade.

    Coins already awarded stay on the ledger; completing the unit again does
    not award them twice. Completed parents stay completed.
    """
    from learnpath.progress.cascade import cascade_from_lesson, cascade_from_module, cascade_from_topic

    table = _table_for(unit)
    model = table.record_model
    await db.execute(
        delete(model)
        .where(model.user_id == user_id, table.fk_column() == unit.id)
        .execution_options(synchronize_session="fetch")
    )
    logger.warning("Reset %s %d for user %d", table.kind.value, unit.id, user_id)

    if isinstance(unit, Topic):
        return await cascade_from_topic(db, redis, user_id, unit, now=now)
    if isinstance(unit, Lesson):
        return await cascade_from_lesson(db, redis, user_id, unit, now=now)
    return await cascade_from_module(db, redis, user_id, unit, now=now)


async def get_next_item(db: AsyncSession, topic: Topic) -> dict[str, Any] | None:
    """Next topic in the lesson, else next lesson in the module, else next module in the week."""
    next_topic = (
        await db.execute(
            select(Topic)
            .where(Topic.lesson_id == topic.lesson_id, Topic.order > topic.order)
            .order_by(Topic.order)
            .limit(1)
        )
    ).scalar_one_or_none()
    if next_topic is not None:
        return {"type": "topic", "id": next_topic.id, "title": next_topic.title}

    lesson = await queries.get_or_404(db, Lesson, topic.lesson_id)
    next_lesson = (
        await db.execute(
            select(Lesson)
            .where(Lesson.module_id == lesson.module_id, Lesson.order > lesson.order)
            .order_by(Lesson.order)
            .limit(1)
        )
    ).scalar_one_or_none()
    if next_lesson is not None:
        return {"type": "lesson", "id": next_lesson.id, "title": next_lesson.title}

    module = await queries.get_or_404(db, Module, lesson.module_id)
    next_module = (
        await db.execute(
            select(Module)
            .where(Module.week_id == module.week_id, Module.order > module.order)
            .order_by(Module.order)
            .limit(1)
        )
    ).scalar_one_or_none()
    if next_module is not None:
        return {"type": "module", "id": next_module.id, "title": next_module.title}
    return None


async def get_unit_statistics(db: AsyncSession, unit: ContentUnit) -> dict[str, Any]:
    """Completion counts for one unit across the students of its cohort."""
    table = _table_for(unit)
    model = table.record_model
    week = await queries.get_or_404(db, Week, await queries.week_id_for(db, unit))

    completions, avg_time, coins = (
        await db.execute(
            select(
                func.count(model.id),
                func.avg(model.time_spent_seconds),
                func.coalesce(func.sum(model.coins_awarded), 0),
            ).where(table.fk_column() == unit.id, model.completed_at.is_not(None))
        )
    ).one()
    students = (
        await db.execute(
            select(func.count()).select_from(Enrollment).where(
                Enrollment.cohort_id == week.cohort_id, Enrollment.status.in_(("active", "completed"))
            )
        )
    ).scalar() or 0

    return {
        "kind": table.kind.value,
        "unit_id": unit.id,
        "total_completions": int(completions),
        "total_students": students,
        "completion_rate": float(queries.percentage(int(completions), students, when_empty=Decimal("0.00"))),
        "average_time_spent_seconds": round(float(avg_time)) if avg_time is not None else None,
        "coins_distributed": int(coins),
    }
