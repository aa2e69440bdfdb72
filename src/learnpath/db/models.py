"""ORM models for the progression and reward engine.

Content hierarchy: Cohort -> Week -> Module -> Lesson -> Topic.
Per-student state: Enrollment, WeekProgress, {topic,lesson,module}_completions.
Ledger: coin_transactions (append-only) backing coin_balances.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from learnpath.db.base import Base, BigIntPK, JSONDoc

Percentage = Numeric(5, 2)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Maps to the 'users' table. Identity is owned by the auth service."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="student")  # student|instructor|admin
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Content hierarchy
# ---------------------------------------------------------------------------


class Cohort(Base):
    """A scheduled run of a course."""

    __tablename__ = "cohorts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="draft"
    )  # draft|published|active|completed|archived
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enrolled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    weeks: Mapped[list[Week]] = relationship("Week", back_populates="cohort", order_by="Week.week_number")


class Week(Base):
    """Top-level unlockable unit of a cohort's curriculum."""

    __tablename__ = "weeks"
    __table_args__ = (UniqueConstraint("cohort_id", "week_number", name="uq_weeks_cohort_number"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cohort_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    unlock_rules: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    drip_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    completion_coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    cohort: Mapped[Cohort] = relationship("Cohort", back_populates="weeks")
    modules: Mapped[list[Module]] = relationship("Module", back_populates="week", order_by="Module.order")


class Module(Base):
    __tablename__ = "modules"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    week: Mapped[Week] = relationship("Week", back_populates="modules")
    lessons: Mapped[list[Lesson]] = relationship("Lesson", back_populates="module", order_by="Lesson.order")


class Lesson(Base):
    """Lesson: ordered topics plus embedded quiz/assignment/live blocks."""

    __tablename__ = "lessons"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    module_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    lesson_blocks: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDoc, nullable=True)
    min_time_required_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    module: Mapped[Module] = relationship("Module", back_populates="lessons")
    topics: Mapped[list[Topic]] = relationship("Topic", back_populates="lesson", order_by="Topic.order")

    def blocks_by_type(self, block_type: str) -> list[dict[str, Any]]:
        """Return the embedded blocks of one type, in authored order."""
        return [b for b in (self.lesson_blocks or []) if isinstance(b, dict) and b.get("type") == block_type]


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    lesson_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    min_time_required_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_requirements: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)

    lesson: Mapped[Lesson] = relationship("Lesson", back_populates="topics")


# ---------------------------------------------------------------------------
# Week-scoped completion sources (reported by external collaborators)
# ---------------------------------------------------------------------------


class Quiz(Base):
    __tablename__ = "quizzes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    passing_score: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    week: Mapped[Week] = relationship("Week")


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"
    __table_args__ = (
        UniqueConstraint("user_id", "quiz_id", "attempt_number", name="uq_quiz_attempts_user_quiz_attempt"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    quiz_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")  # in_progress|completed
    score_percentage: Mapped[Decimal] = mapped_column(Percentage, nullable=False, default=Decimal("0"))
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    answers: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    week: Mapped[Week] = relationship("Week")


class AssignmentSubmission(Base):
    __tablename__ = "assignment_submissions"
    __table_args__ = (UniqueConstraint("user_id", "assignment_id", name="uq_submissions_user_assignment"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assignment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(24), nullable=False, default="submitted"
    )  # submitted|approved|rejected|revision_requested
    content: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    assignment: Mapped[Assignment] = relationship("Assignment")


class LiveClass(Base):
    __tablename__ = "live_classes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    week: Mapped[Week] = relationship("Week")


class LiveAttendance(Base):
    __tablename__ = "live_attendance"
    __table_args__ = (UniqueConstraint("user_id", "live_class_id", name="uq_live_attendance_user_class"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    live_class_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("live_classes.id", ondelete="CASCADE"), nullable=False
    )
    attended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attendance_data: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)


class LessonBlockCompletion(Base):
    """One attempt at a quiz/assignment block embedded in a lesson."""

    __tablename__ = "lesson_block_completions"
    __table_args__ = (
        UniqueConstraint("user_id", "lesson_id", "block_id", "attempt_number", name="uq_block_completions_attempt"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lesson_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    block_id: Mapped[str] = mapped_column(String(64), nullable=False)
    block_type: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    score_percentage: Mapped[Decimal | None] = mapped_column(Percentage, nullable=True)
    completion_data: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Per-student progress
# ---------------------------------------------------------------------------


class Enrollment(Base):
    """Student membership in a cohort: UNIQUE(user_id, cohort_id)."""

    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "cohort_id", name="uq_enrollments_user_cohort"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    cohort_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")  # active|completed|dropped|suspended
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_percentage: Mapped[Decimal] = mapped_column(Percentage, nullable=False, default=Decimal("0"))

    cohort: Mapped[Cohort] = relationship("Cohort")


class WeekProgress(Base):
    """One row per (student, week): created at enrollment, never deleted."""

    __tablename__ = "week_progress"
    __table_args__ = (UniqueConstraint("user_id", "week_id", name="uq_week_progress_user_week"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    cohort_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False)
    week_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False)
    completion_percentage: Mapped[Decimal] = mapped_column(Percentage, nullable=False, default=Decimal("0"))
    is_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class _CompletionColumns:
    """Columns shared by topic, lesson and module completion records."""

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    completion_percentage: Mapped[Decimal] = mapped_column(Percentage, nullable=False, default=Decimal("0"))
    completion_data: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))


class TopicCompletion(_CompletionColumns, Base):
    """Topic completion: UNIQUE(user_id, topic_id) prevents duplicates."""

    __tablename__ = "topic_completions"
    __table_args__ = (
        UniqueConstraint("user_id", "topic_id", name="uq_topic_completions_user_topic"),
        Index("idx_topic_completions_user_pct", "user_id", "completion_percentage"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    topic_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False)
    last_position_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    completion_method: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")


class LessonCompletion(_CompletionColumns, Base):
    """Lesson completion: UNIQUE(user_id, lesson_id) prevents duplicates."""

    __tablename__ = "lesson_completions"
    __table_args__ = (UniqueConstraint("user_id", "lesson_id", name="uq_lesson_completions_user_lesson"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lesson_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)


class ModuleCompletion(_CompletionColumns, Base):
    """Module completion: UNIQUE(user_id, module_id) prevents duplicates."""

    __tablename__ = "module_completions"
    __table_args__ = (UniqueConstraint("user_id", "module_id", name="uq_module_completions_user_module"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    module_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)


# ---------------------------------------------------------------------------
# Coin ledger
# ---------------------------------------------------------------------------


class CoinBalance(Base):
    """Denormalized balance: single row per user, derived from coin_transactions."""

    __tablename__ = "coin_balances"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, autoincrement=False
    )
    total_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))
    lifetime_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))
    lifetime_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default=text("0"))
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CoinTransaction(Base):
    """Immutable coin transaction log with idempotency key."""

    __tablename__ = "coin_transactions"
    __table_args__ = (
        Index("idx_coin_transactions_user_created", "user_id", "created_at"),
        Index("idx_coin_transactions_source", "source_type", "source_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)  # earned|spent|bonus|penalty|adjustment
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONDoc, nullable=True)
    created_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
