"""Entry points for completion facts reported by external collaborators.

Quiz grading, lesson-block grading, assignment review and live-class
attendance each record their fact, issue the reward once through the ledger
and then trigger the matching cascade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.coins import ledger_service
from learnpath.coins.sources import SourceRef
from learnpath.db.models import (
    Assignment,
    AssignmentSubmission,
    Lesson,
    LessonBlockCompletion,
    LiveAttendance,
    LiveClass,
    Quiz,
    QuizAttempt,
)
from learnpath.db.upsert import insert_for
from learnpath.errors import EligibilityError, NotFoundError
from learnpath.progress import queries
from learnpath.progress.cascade import CascadeReport, cascade_from_lesson, cascade_from_week
from learnpath.progress.completion_service import WEEK_LOCKED_MESSAGE

logger = logging.getLogger(__name__)


@dataclass
class ActivityResult:
    """The recorded fact, the coins it earned and the cascade it triggered."""

    record: Any
    coins_awarded: int = 0
    cascade: CascadeReport = field(default_factory=CascadeReport.skipped)


async def _require_unlocked(db: AsyncSession, user_id: int, week_id: int) -> None:
    if not await queries.is_week_unlocked(db, user_id, week_id):
        raise EligibilityError(WEEK_LOCKED_MESSAGE)


async def _reward_once(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    source: SourceRef,
    description: str,
    now: datetime,
) -> int:
    if amount <= 0 or await ledger_service.has_earned(db, user_id, source):
        return 0
    await ledger_service.award(db, redis, user_id, amount, source, description=description, now=now)
    return amount


# ---------------------------------------------------------------------------
# Quizzes
# ---------------------------------------------------------------------------


async def record_quiz_result(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    quiz: Quiz,
    score_percentage: float | Decimal | int,
    answers: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ActivityResult:
    """Store a graded quiz attempt; the first pass earns the quiz reward."""
    now = now or datetime.now(timezone.utc)
    await _require_unlocked(db, user_id, quiz.week_id)

    already_passed = (
        await db.execute(
            select(QuizAttempt.id)
            .where(QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz.id, QuizAttempt.passed.is_(True))
            .limit(1)
        )
    ).scalar_one_or_none()
    if already_passed is not None:
        msg = "Quiz already passed"
        raise EligibilityError(msg)

    attempts = (
        await db.execute(
            select(func.count()).select_from(QuizAttempt).where(
                QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz.id
            )
        )
    ).scalar() or 0
    if quiz.max_attempts is not None and attempts >= quiz.max_attempts:
        msg = "Maximum attempts exceeded"
        raise EligibilityError(msg)

    score = queries.clamp_percentage(score_percentage)
    passed = score >= Decimal(quiz.passing_score)
    attempt = QuizAttempt(
        user_id=user_id,
        quiz_id=quiz.id,
        attempt_number=attempts + 1,
        status="completed",
        score_percentage=score,
        passed=passed,
        answers=answers,
        started_at=now,
        completed_at=now,
    )
    db.add(attempt)
    await db.flush()

    if not passed:
        logger.info("User %d failed quiz %d (%s%%, attempt %d)", user_id, quiz.id, score, attempt.attempt_number)
        return ActivityResult(record=attempt)

    coins = await _reward_once(db, redis, user_id, quiz.coin_reward, SourceRef.quiz(quiz.id), f"Passed quiz: {quiz.title}", now)
    report = await cascade_from_week(db, redis, user_id, quiz.week_id, now=now)
    return ActivityResult(record=attempt, coins_awarded=coins, cascade=report)


async def record_block_result(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    lesson: Lesson,
    block_id: str,
    passed: bool,
    score_percentage: float | Decimal | int | None = None,
    completion_data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ActivityResult:
    """Store an attempt at a quiz/assignment block embedded in a lesson."""
    now = now or datetime.now(timezone.utc)
    block = next(
        (
            b
            for block_type in queries.GRADED_BLOCK_TYPES
            for b in lesson.blocks_by_type(block_type)
            if str(b.get("id")) == str(block_id)
        ),
        None,
    )
    if block is None:
        msg = f"Lesson {lesson.id} has no graded block {block_id!r}"
        raise NotFoundError(msg)
    await _require_unlocked(db, user_id, await queries.week_id_for(db, lesson))

    attempts = (
        await db.execute(
            select(func.count()).select_from(LessonBlockCompletion).where(
                LessonBlockCompletion.user_id == user_id,
                LessonBlockCompletion.lesson_id == lesson.id,
                LessonBlockCompletion.block_id == str(block_id),
            )
        )
    ).scalar() or 0

    entry = LessonBlockCompletion(
        user_id=user_id,
        lesson_id=lesson.id,
        block_id=str(block_id),
        block_type=block["type"],
        attempt_number=attempts + 1,
        passed=passed,
        score_percentage=queries.clamp_percentage(score_percentage) if score_percentage is not None else None,
        completion_data=completion_data,
        completed_at=now,
    )
    db.add(entry)
    await db.flush()

    report = await cascade_from_lesson(db, redis, user_id, lesson, now=now) if passed else CascadeReport.skipped()
    return ActivityResult(record=entry, cascade=report)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


async def submit_assignment(
    db: AsyncSession,
    user_id: int,
    assignment: Assignment,
    content: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AssignmentSubmission:
    """Create or resubmit. Approved submissions are final."""
    now = now or datetime.now(timezone.utc)
    await _require_unlocked(db, user_id, assignment.week_id)

    submission = (
        await db.execute(
            select(AssignmentSubmission).where(
                AssignmentSubmission.user_id == user_id, AssignmentSubmission.assignment_id == assignment.id
            )
        )
    ).scalar_one_or_none()
    if submission is None:
        submission = AssignmentSubmission(user_id=user_id, assignment_id=assignment.id)
        db.add(submission)
    elif submission.status == "approved":
        msg = "Assignment already approved"
        raise EligibilityError(msg)

    submission.status = "submitted"
    submission.content = content
    submission.submitted_at = now
    submission.reviewed_by = None
    submission.reviewed_at = None
    submission.feedback = None
    await db.flush()
    return submission


async def approve_submission(
    db: AsyncSession,
    redis: object | None,
    submission: AssignmentSubmission,
    reviewer_id: int | None = None,
    feedback: str | None = None,
    now: datetime | None = None,
) -> ActivityResult:
    """Approve once; the first approval earns the reward and cascades the week."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        update(AssignmentSubmission)
        .where(AssignmentSubmission.id == submission.id, AssignmentSubmission.status != "approved")
        .values(status="approved", reviewed_by=reviewer_id, reviewed_at=now, feedback=feedback)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(submission)
    if result.rowcount != 1:
        return ActivityResult(record=submission)

    assignment = await queries.get_or_404(db, Assignment, submission.assignment_id)
    user_id = submission.user_id
    coins = await _reward_once(
        db,
        redis,
        user_id,
        assignment.coin_reward,
        SourceRef.assignment(assignment.id),
        f"Assignment approved: {assignment.title}",
        now,
    )
    report = await cascade_from_week(db, redis, user_id, assignment.week_id, now=now)
    return ActivityResult(record=submission, coins_awarded=coins, cascade=report)


async def reject_submission(
    db: AsyncSession,
    submission: AssignmentSubmission,
    reviewer_id: int | None = None,
    feedback: str | None = None,
    request_revision: bool = False,
    now: datetime | None = None,
) -> AssignmentSubmission:
    if submission.status == "approved":
        msg = "Approved submissions cannot be rejected"
        raise EligibilityError(msg)
    submission.status = "revision_requested" if request_revision else "rejected"
    submission.reviewed_by = reviewer_id
    submission.reviewed_at = now or datetime.now(timezone.utc)
    submission.feedback = feedback
    await db.flush()
    return submission


# ---------------------------------------------------------------------------
# Live classes
# ---------------------------------------------------------------------------


async def mark_attendance(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    live_class: LiveClass,
    joined_at: datetime | None = None,
    attendance_data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ActivityResult:
    """Record attendance; cascades every lesson embedding the class, then its week."""
    now = now or datetime.now(timezone.utc)
    await _require_unlocked(db, user_id, live_class.week_id)
    await db.execute(
        insert_for(db, LiveAttendance)
        .values(
            user_id=user_id,
            live_class_id=live_class.id,
            attended=True,
            joined_at=joined_at or now,
            attendance_data=attendance_data,
        )
        .on_conflict_do_nothing(index_elements=["user_id", "live_class_id"])
    )
    await db.execute(
        update(LiveAttendance)
        .where(
            LiveAttendance.user_id == user_id,
            LiveAttendance.live_class_id == live_class.id,
            LiveAttendance.attended.is_(False),
        )
        .values(attended=True, joined_at=joined_at or now)
        .execution_options(synchronize_session=False)
    )
    attendance = (
        await db.execute(
            select(LiveAttendance)
            .where(LiveAttendance.user_id == user_id, LiveAttendance.live_class_id == live_class.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()

    coins = await _reward_once(
        db,
        redis,
        user_id,
        live_class.coin_reward,
        SourceRef.live_class(live_class.id),
        f"Attended live class: {live_class.title}",
        now,
    )

    report = CascadeReport.skipped()
    for lesson in await queries.lessons_embedding_live_class(db, live_class):
        report = report.merge(await cascade_from_lesson(db, redis, user_id, lesson, now=now))
    report = report.merge(await cascade_from_week(db, redis, user_id, live_class.week_id, now=now))
    return ActivityResult(record=attendance, coins_awarded=coins, cascade=report)
