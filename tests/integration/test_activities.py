"""Quiz, lesson-block, assignment and live-class facts feeding the cascade."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from learnpath.coins import ledger_service
from learnpath.db.models import Assignment, Lesson, LiveAttendance, LiveClass, Quiz, Topic, Week
from learnpath.errors import EligibilityError, NotFoundError
from learnpath.progress import activity_service, completion_service, queries

from conftest import NOW


async def _week1(db, course) -> Week:
    return await db.get(Week, course.week_ids[0])


class TestQuizzes:
    @pytest.mark.asyncio
    async def test_pass_rewards_once_and_counts_toward_week(self, db_session, course):
        week = await _week1(db_session, course)
        quiz = Quiz(week_id=week.id, title="Checkpoint", passing_score=70, coin_reward=15)
        db_session.add(quiz)
        await db_session.flush()
        user = course.student_id

        failed = await activity_service.record_quiz_result(db_session, None, user, quiz, 40, now=NOW)
        assert not failed.record.passed
        assert failed.coins_awarded == 0

        passed = await activity_service.record_quiz_result(db_session, None, user, quiz, 90, {"q1": "b"}, now=NOW)
        assert passed.record.passed
        assert passed.record.attempt_number == 2
        assert passed.coins_awarded == 15
        assert passed.cascade.ok

        # Week 1 now has a module and a quiz: 1 of 2 items.
        progress = await queries.get_week_progress(db_session, user, week.id)
        assert progress.completion_percentage == Decimal("50")

        with pytest.raises(EligibilityError, match="Quiz already passed"):
            await activity_service.record_quiz_result(db_session, None, user, quiz, 100, now=NOW)
        assert await ledger_service.get_cached_balance(db_session, None, user) == 15

    @pytest.mark.asyncio
    async def test_max_attempts(self, db_session, course):
        week = await _week1(db_session, course)
        quiz = Quiz(week_id=week.id, title="Hard", passing_score=90, max_attempts=2)
        db_session.add(quiz)
        await db_session.flush()

        for _ in range(2):
            await activity_service.record_quiz_result(db_session, None, course.student_id, quiz, 50, now=NOW)
        with pytest.raises(EligibilityError, match="Maximum attempts exceeded"):
            await activity_service.record_quiz_result(db_session, None, course.student_id, quiz, 95, now=NOW)

    @pytest.mark.asyncio
    async def test_locked_week(self, db_session, course):
        quiz = Quiz(week_id=course.week_ids[1], title="Later")
        db_session.add(quiz)
        await db_session.flush()
        with pytest.raises(EligibilityError, match="Week must be unlocked"):
            await activity_service.record_quiz_result(db_session, None, course.student_id, quiz, 100, now=NOW)


class TestLessonBlocks:
    @pytest.mark.asyncio
    async def test_passed_block_completes_lesson(self, db_session, course):
        user = course.student_id
        lesson = await db_session.get(Lesson, course.lesson_ids[0])
        lesson.lesson_blocks = [{"id": "quiz-1", "type": "quiz", "payload": {"questions": 3}}]
        await db_session.flush()

        for topic_id in course.topic_ids[:2]:
            await completion_service.complete_unit(db_session, None, user, await db_session.get(Topic, topic_id), now=NOW)
        record = await completion_service.get_record(db_session, user, lesson)
        assert record.completion_percentage == Decimal("66.67")
        assert record.completed_at is None

        failed = await activity_service.record_block_result(db_session, None, user, lesson, "quiz-1", False, 30, now=NOW)
        assert failed.record.attempt_number == 1
        assert failed.cascade.steps == []

        passed = await activity_service.record_block_result(db_session, None, user, lesson, "quiz-1", True, 80, now=NOW)
        assert passed.record.attempt_number == 2
        assert passed.cascade.week_completed
        assert await completion_service.has_completed(db_session, user, lesson)

    @pytest.mark.asyncio
    async def test_unknown_block(self, db_session, course):
        lesson = await db_session.get(Lesson, course.lesson_ids[0])
        with pytest.raises(NotFoundError):
            await activity_service.record_block_result(db_session, None, course.student_id, lesson, "nope", True, now=NOW)


class TestAssignments:
    @pytest.mark.asyncio
    async def test_review_lifecycle(self, db_session, course):
        user = course.student_id
        week = await _week1(db_session, course)
        assignment = Assignment(week_id=week.id, title="Essay", coin_reward=25)
        db_session.add(assignment)
        await db_session.flush()

        submission = await activity_service.submit_assignment(db_session, user, assignment, {"url": "v1"}, now=NOW)
        assert submission.status == "submitted"

        revised = await activity_service.reject_submission(
            db_session, submission, reviewer_id=course.instructor_id, feedback="More detail", request_revision=True
        )
        assert revised.status == "revision_requested"

        submission = await activity_service.submit_assignment(db_session, user, assignment, {"url": "v2"}, now=NOW)
        assert submission.status == "submitted"
        assert submission.feedback is None

        approved = await activity_service.approve_submission(
            db_session, None, submission, reviewer_id=course.instructor_id, now=NOW
        )
        assert approved.record.status == "approved"
        assert approved.coins_awarded == 25

        again = await activity_service.approve_submission(db_session, None, submission, now=NOW)
        assert again.coins_awarded == 0
        assert await ledger_service.get_cached_balance(db_session, None, user) == 25

        with pytest.raises(EligibilityError, match="Assignment already approved"):
            await activity_service.submit_assignment(db_session, user, assignment, {"url": "v3"}, now=NOW)
        with pytest.raises(EligibilityError):
            await activity_service.reject_submission(db_session, submission)


class TestLiveClasses:
    @pytest.mark.asyncio
    async def test_attendance_cascades_embedding_lessons(self, db_session, course):
        user = course.student_id
        week = await _week1(db_session, course)
        live = LiveClass(
            week_id=week.id, title="Office hours", coin_reward=8, scheduled_at=datetime(2024, 5, 21, tzinfo=timezone.utc)
        )
        db_session.add(live)
        await db_session.flush()
        lesson = await db_session.get(Lesson, course.lesson_ids[0])
        lesson.lesson_blocks = [{"id": "live-1", "type": "live", "payload": {"liveClassId": live.id}}]
        await db_session.flush()

        embedding = await queries.lessons_embedding_live_class(db_session, live)
        assert [found.id for found in embedding] == [lesson.id]

        first = await activity_service.mark_attendance(db_session, None, user, live, now=NOW)
        second = await activity_service.mark_attendance(db_session, None, user, live, now=NOW)

        assert first.record.attended
        assert first.coins_awarded == 8
        assert second.coins_awarded == 0
        assert [s.split(":")[0] for s in first.cascade.steps] == ["lesson", "module", "week", "week"]
        rows = (await db_session.execute(select(func.count()).select_from(LiveAttendance))).scalar()
        assert rows == 1

        record = await completion_service.get_record(db_session, user, lesson)
        assert record.completion_percentage == Decimal("33.33")

    @pytest.mark.asyncio
    async def test_attendance_requires_unlocked_week(self, db_session, course):
        locked = LiveClass(week_id=course.week_ids[1], title="Week 2 kickoff", coin_reward=25, scheduled_at=NOW)
        open_class = LiveClass(week_id=course.week_ids[0], title="Week 1 kickoff", coin_reward=25, scheduled_at=NOW)
        db_session.add_all([locked, open_class])
        await db_session.flush()

        with pytest.raises(EligibilityError, match="Week must be unlocked"):
            await activity_service.mark_attendance(db_session, None, course.student_id, locked, now=NOW)
        with pytest.raises(EligibilityError, match="Week must be unlocked"):
            await activity_service.mark_attendance(db_session, None, course.other_student_id, open_class, now=NOW)

        rows = (await db_session.execute(select(func.count()).select_from(LiveAttendance))).scalar()
        assert rows == 0
        assert await ledger_service.get_cached_balance(db_session, None, course.student_id) == 0
        assert await ledger_service.get_cached_balance(db_session, None, course.other_student_id) == 0
