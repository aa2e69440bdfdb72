"""Week unlock rules: previous week, coins, completions, progress and drip."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import AsyncMock

from learnpath.cohorts.enrollment_service import enroll_student
from learnpath.coins import ledger_service
from learnpath.db.models import Quiz, Week, WeekProgress
from learnpath.errors import UnlockDeniedError
from learnpath.progress import activity_service, queries, unlock_service

from conftest import NOW, create_cohort, create_user, create_week


@dataclass
class GatedCohort:
    student_id: int
    week1: Week
    week2: Week
    quiz: Quiz


async def _gated(db: AsyncSession, unlock_rules: dict | None, drip_days: int = 0) -> GatedCohort:
    """Week 1 holds a single quiz; week 2 carries the rules under test."""
    student = await create_user(db, "gated@example.com")
    cohort = await create_cohort(db, start_date=date(2024, 5, 10))
    week1 = await create_week(db, cohort, 1)
    week2 = await create_week(db, cohort, 2, unlock_rules=unlock_rules, drip_days=drip_days)
    quiz = Quiz(week_id=week1.id, title="Week 1 check", passing_score=70)
    db.add(quiz)
    await db.flush()
    await enroll_student(db, None, student.id, cohort, now=NOW)
    return GatedCohort(student.id, week1, week2, quiz)


async def _complete_week(db: AsyncSession, user_id: int, week: Week) -> None:
    await db.execute(
        update(WeekProgress)
        .where(WeekProgress.user_id == user_id, WeekProgress.week_id == week.id)
        .values(completion_percentage=Decimal("100"), completed_at=NOW)
    )


class TestUnlockGating:
    @pytest.mark.asyncio
    async def test_quiz_and_coin_threshold(self, db_session):
        """One passed quiz and 50 coins is not enough; 100 coins is."""
        gated = await _gated(db_session, {"required_completions": [{"type": "quizzes", "count": 1}], "min_coins": 100})
        user = gated.student_id
        await ledger_service.award_bonus(db_session, None, user, 50, "Seed", now=NOW)

        result = await activity_service.record_quiz_result(db_session, None, user, gated.quiz, 85, now=NOW)
        assert result.record.passed
        assert result.cascade.week_completed
        assert result.cascade.unlocked_week_id is None

        assert not await unlock_service.can_unlock(db_session, None, user, gated.week2, now=NOW)
        with pytest.raises(UnlockDeniedError, match="Requirements not met"):
            await unlock_service.unlock_week(db_session, None, user, gated.week2, now=NOW)

        await ledger_service.award_bonus(db_session, None, user, 50, "Seed", now=NOW)
        assert await unlock_service.can_unlock(db_session, None, user, gated.week2, now=NOW)
        progress = await unlock_service.unlock_week(db_session, None, user, gated.week2, now=NOW)
        assert progress.is_unlocked
        assert progress.unlocked_at is not None

    @pytest.mark.asyncio
    async def test_auto_unlock_when_rules_met(self, db_session):
        gated = await _gated(db_session, {"required_completions": [{"type": "quizzes", "count": 1, "week_number": 1}]})
        result = await activity_service.record_quiz_result(db_session, None, gated.student_id, gated.quiz, 70, now=NOW)
        assert result.cascade.unlocked_week_id == gated.week2.id
        assert await queries.is_week_unlocked(db_session, gated.student_id, gated.week2.id)

    @pytest.mark.asyncio
    async def test_previous_week_must_be_completed(self, db_session):
        gated = await _gated(db_session, None)
        assert not await unlock_service.can_unlock(db_session, None, gated.student_id, gated.week2, now=NOW)
        await _complete_week(db_session, gated.student_id, gated.week1)
        assert await unlock_service.can_unlock(db_session, None, gated.student_id, gated.week2, now=NOW)

    @pytest.mark.asyncio
    async def test_week_one_always_unlockable(self, db_session):
        gated = await _gated(db_session, None)
        assert await unlock_service.can_unlock(db_session, None, gated.student_id, gated.week1, now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_requirement_type_is_met(self, db_session):
        gated = await _gated(db_session, {"required_completions": [{"type": "badges", "count": 4}]})
        await _complete_week(db_session, gated.student_id, gated.week1)
        assert await unlock_service.meets_unlock_requirements(db_session, None, gated.student_id, gated.week2, now=NOW)

    @pytest.mark.asyncio
    async def test_min_previous_week_progress(self, db_session):
        gated = await _gated(db_session, {"min_previous_week_progress": 80})
        user = gated.student_id
        await db_session.execute(
            update(WeekProgress)
            .where(WeekProgress.user_id == user, WeekProgress.week_id == gated.week1.id)
            .values(completion_percentage=Decimal("75"))
        )
        assert not await unlock_service.meets_unlock_requirements(db_session, None, user, gated.week2, now=NOW)
        await _complete_week(db_session, user, gated.week1)
        assert await unlock_service.meets_unlock_requirements(db_session, None, user, gated.week2, now=NOW)

    @pytest.mark.asyncio
    async def test_coin_threshold_reads_through_cache(self, db_session):
        gated = await _gated(db_session, {"min_coins": 100})
        await _complete_week(db_session, gated.student_id, gated.week1)
        redis = AsyncMock()
        redis.get.return_value = "150"
        assert await unlock_service.can_unlock(db_session, redis, gated.student_id, gated.week2, now=NOW)


class TestDrip:
    @pytest.mark.asyncio
    async def test_drip_days_from_cohort_start(self, db_session):
        """Cohort starts 2024-05-10, drip_days 3: locked on the 11th, open on the 13th."""
        gated = await _gated(db_session, {"min_previous_week_progress": 100}, drip_days=3)
        user = gated.student_id
        await _complete_week(db_session, user, gated.week1)

        may_11 = datetime(2024, 5, 11, 9, 0, tzinfo=timezone.utc)
        may_13 = datetime(2024, 5, 13, 0, 0, tzinfo=timezone.utc)
        assert not await unlock_service.can_unlock(db_session, None, user, gated.week2, now=may_11)
        assert await unlock_service.can_unlock(db_session, None, user, gated.week2, now=may_13)

    @pytest.mark.asyncio
    async def test_zero_drip_is_ignored(self, db_session):
        gated = await _gated(db_session, None, drip_days=0)
        await _complete_week(db_session, gated.student_id, gated.week1)
        early = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert await unlock_service.can_unlock(db_session, None, gated.student_id, gated.week2, now=early)


class TestUnlockWeek:
    @pytest.mark.asyncio
    async def test_unlock_is_idempotent(self, db_session):
        gated = await _gated(db_session, None)
        await _complete_week(db_session, gated.student_id, gated.week1)
        first = await unlock_service.unlock_week(db_session, None, gated.student_id, gated.week2, now=NOW)
        second = await unlock_service.unlock_week(db_session, None, gated.student_id, gated.week2, now=NOW)
        assert first.id == second.id
        assert second.is_unlocked

    @pytest.mark.asyncio
    async def test_missing_progress_row(self, db_session):
        gated = await _gated(db_session, None)
        outsider = await create_user(db_session, "outsider@example.com")
        with pytest.raises(UnlockDeniedError, match="Progress record not found"):
            await unlock_service.unlock_week(db_session, None, outsider.id, gated.week2, now=NOW)

    @pytest.mark.asyncio
    async def test_bulk_unlock(self, db_session):
        gated = await _gated(db_session, {"min_coins": 10})
        outsider = await create_user(db_session, "outsider@example.com")

        outcomes = await unlock_service.bulk_unlock_week(
            db_session, None, gated.week2, [gated.student_id, outsider.id], now=NOW
        )
        assert outcomes[outsider.id] == "error: not enrolled"
        assert outcomes[gated.student_id].startswith("error: Cannot unlock week 2")

        forced = await unlock_service.bulk_unlock_week(db_session, None, gated.week2, [gated.student_id], force=True, now=NOW)
        assert forced == {gated.student_id: "unlocked"}
        again = await unlock_service.bulk_unlock_week(db_session, None, gated.week2, [gated.student_id], now=NOW)
        assert again == {gated.student_id: "already_unlocked"}


class TestRequirementsSummary:
    @pytest.mark.asyncio
    async def test_week_one_summary(self, db_session):
        gated = await _gated(db_session, None)
        summary = await unlock_service.get_unlock_requirements_summary(db_session, None, gated.student_id, gated.week1)
        assert summary["is_unlocked"] is True
        assert summary["can_unlock"] is True
        assert summary["requirements"] == []
        assert summary["message"] == "Week 1 is automatically unlocked"

    @pytest.mark.asyncio
    async def test_itemized_summary(self, db_session):
        gated = await _gated(
            db_session,
            {"min_coins": 100, "required_completions": [{"type": "quizzes", "count": 1}]},
            drip_days=3,
        )
        user = gated.student_id
        await ledger_service.award_bonus(db_session, None, user, 40, "Seed", now=NOW)

        summary = await unlock_service.get_unlock_requirements_summary(
            db_session, None, user, gated.week2, now=datetime(2024, 5, 11, tzinfo=timezone.utc)
        )
        items = {item["type"]: item for item in summary["requirements"]}

        assert summary["can_unlock"] is False
        assert summary["message"] == "Some requirements not yet met"
        assert list(items) == ["previous_week", "coins", "quizzes", "drip"]
        assert items["previous_week"]["met"] is False
        assert (items["coins"]["current"], items["coins"]["required"], items["coins"]["met"]) == (40, 100, False)
        assert items["quizzes"]["description"] == "Pass 1 quiz(zes)"
        assert items["quizzes"]["current"] == 0
        assert items["drip"]["required"] == "2024-05-13"
        assert items["drip"]["met"] is False
