"""Cohort enrollment and the enrollment-level progress roll-up."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cache import CacheKey, ProgressCache
from learnpath.db.models import Cohort, Enrollment, WeekProgress
from learnpath.db.upsert import insert_for
from learnpath.errors import EnrollmentError, NotFoundError
from learnpath.progress import queries

logger = logging.getLogger(__name__)

ENROLLABLE_STATUSES = frozenset({"published", "active"})
_CENT = Decimal("0.01")


async def get_enrollment(db: AsyncSession, user_id: int, cohort_id: int) -> Enrollment | None:
    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.user_id == user_id, Enrollment.cohort_id == cohort_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _create_week_rows(db: AsyncSession, user_id: int, cohort_id: int, now: datetime) -> int:
    """One WeekProgress per week, week 1 unlocked. Existing rows are kept as-is."""
    weeks = await queries.weeks_for_cohort(db, cohort_id)
    for week in weeks:
        first = week.week_number == 1
        await db.execute(
            insert_for(db, WeekProgress)
            .values(
                user_id=user_id,
                cohort_id=cohort_id,
                week_id=week.id,
                completion_percentage=Decimal("0"),
                is_unlocked=first,
                unlocked_at=now if first else None,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "week_id"])
        )
    return len(weeks)


async def enroll_student(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    cohort: Cohort,
    now: datetime | None = None,
) -> Enrollment:
    """Enroll a student and pre-create their week progress rows.

    A previously dropped student is re-activated with their old progress.
    """
    now = now or datetime.now(timezone.utc)
    if cohort.status not in ENROLLABLE_STATUSES:
        msg = "Cohort is not open for enrollment"
        raise EnrollmentError(msg)

    existing = await get_enrollment(db, user_id, cohort.id)
    if existing is not None and existing.status != "dropped":
        msg = "Student is already enrolled in this cohort"
        raise EnrollmentError(msg)

    # Seat reservation is a single conditional increment.
    seat = await db.execute(
        update(Cohort)
        .where(
            Cohort.id == cohort.id,
            (Cohort.capacity.is_(None)) | (Cohort.enrolled_count < Cohort.capacity),
        )
        .values(enrolled_count=Cohort.enrolled_count + 1)
        .execution_options(synchronize_session=False)
    )
    if seat.rowcount != 1:
        msg = "Cohort is full"
        raise EnrollmentError(msg)

    if existing is not None:
        existing.status = "active"
        existing.enrolled_at = now
        enrollment = existing
    else:
        enrollment = Enrollment(
            user_id=user_id,
            cohort_id=cohort.id,
            status="active",
            enrolled_at=now,
            completion_percentage=Decimal("0"),
        )
        db.add(enrollment)
    await db.flush()

    weeks = await _create_week_rows(db, user_id, cohort.id, now)
    await db.refresh(cohort)
    await ProgressCache(redis).invalidate(CacheKey.cohort_progress(user_id, cohort.id))
    logger.info("Enrolled user %d in cohort %d (%d weeks)", user_id, cohort.id, weeks)
    return enrollment


async def withdraw_student(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    cohort: Cohort,
) -> Enrollment:
    """Archive the enrollment (status ``dropped``). Progress rows are kept."""
    enrollment = await get_enrollment(db, user_id, cohort.id)
    if enrollment is None or enrollment.status == "dropped":
        msg = f"User {user_id} is not enrolled in cohort {cohort.id}"
        raise NotFoundError(msg)

    enrollment.status = "dropped"
    await db.execute(
        update(Cohort)
        .where(Cohort.id == cohort.id, Cohort.enrolled_count > 0)
        .values(enrolled_count=Cohort.enrolled_count - 1)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    await db.refresh(cohort)
    await ProgressCache(redis).invalidate(CacheKey.cohort_progress(user_id, cohort.id))
    logger.info("Withdrew user %d from cohort %d", user_id, cohort.id)
    return enrollment


async def start_cohort(
    db: AsyncSession,
    redis: object | None,
    cohort: Cohort,
    now: datetime | None = None,
) -> int:
    """Mark the cohort active and make sure week 1 is unlocked for every active student.

    Returns the number of students whose week 1 was unlocked by this call.
    """
    now = now or datetime.now(timezone.utc)
    cohort.status = "active"
    if cohort.start_date is None:
        cohort.start_date = now.date()
    await db.flush()

    weeks = await queries.weeks_for_cohort(db, cohort.id)
    first = next((w for w in weeks if w.week_number == 1), None)
    if first is None:
        return 0

    active_users = select(Enrollment.user_id).where(
        Enrollment.cohort_id == cohort.id, Enrollment.status == "active"
    )
    result = await db.execute(
        update(WeekProgress)
        .where(
            WeekProgress.week_id == first.id,
            WeekProgress.user_id.in_(active_users),
            WeekProgress.is_unlocked.is_(False),
        )
        .values(is_unlocked=True, unlocked_at=now)
        .execution_options(synchronize_session=False)
    )
    user_ids = (await db.execute(active_users)).scalars().all()
    await ProgressCache(redis).invalidate(
        *(CacheKey.week_progress(uid, first.id) for uid in user_ids),
        *(CacheKey.cohort_progress(uid, cohort.id) for uid in user_ids),
    )
    logger.info("Started cohort %d; week 1 unlocked for %d students", cohort.id, result.rowcount)
    return result.rowcount


async def refresh_enrollment_progress(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    cohort_id: int,
    now: datetime | None = None,
) -> Enrollment | None:
    """Average of the student's week percentages; completed once every week is."""
    enrollment = await get_enrollment(db, user_id, cohort_id)
    if enrollment is None:
        return None

    row = (
        await db.execute(
            select(
                func.count(WeekProgress.id),
                func.coalesce(func.sum(WeekProgress.completion_percentage), 0),
                func.count(WeekProgress.completed_at),
            ).where(WeekProgress.user_id == user_id, WeekProgress.cohort_id == cohort_id)
        )
    ).one()
    weeks, pct_sum, completed = int(row[0]), Decimal(str(row[1])), int(row[2])
    average = (pct_sum / weeks).quantize(_CENT) if weeks else Decimal("0.00")

    values: dict[str, object] = {"completion_percentage": min(average, queries.HUNDRED)}
    if weeks and completed == weeks and enrollment.status == "active":
        values.update(status="completed", completed_at=now or datetime.now(timezone.utc), completion_percentage=queries.HUNDRED)
        logger.info("User %d completed cohort %d", user_id, cohort_id)

    await db.execute(
        update(Enrollment)
        .where(Enrollment.id == enrollment.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(enrollment)
    await ProgressCache(redis).invalidate(CacheKey.cohort_progress(user_id, cohort_id))
    return enrollment


async def get_cohort_stats(db: AsyncSession, cohort: Cohort) -> dict[str, object]:
    """Enrollment counts by status, completion rate and average progress."""
    rows = (
        await db.execute(
            select(Enrollment.status, func.count(Enrollment.id), func.avg(Enrollment.completion_percentage))
            .where(Enrollment.cohort_id == cohort.id)
            .group_by(Enrollment.status)
        )
    ).all()
    by_status = {status: int(count) for status, count, _ in rows}
    total = sum(by_status.values())
    progress_sum = sum(Decimal(str(avg or 0)) * int(count) for _, count, avg in rows)
    average = (progress_sum / total).quantize(_CENT) if total else Decimal("0.00")

    return {
        "cohort_id": cohort.id,
        "total_enrolled": total,
        "active_students": by_status.get("active", 0),
        "completed_students": by_status.get("completed", 0),
        "dropped_students": by_status.get("dropped", 0),
        "capacity_remaining": max(0, cohort.capacity - cohort.enrolled_count) if cohort.capacity is not None else None,
        "completion_rate": float(queries.percentage(by_status.get("completed", 0), total, when_empty=Decimal("0.00"))),
        "average_progress": float(average),
    }
