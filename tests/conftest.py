"""Shared test fixtures.

Every test gets a fresh SQLite database (aiosqlite) built from the ORM
metadata. Redis is off unless a test passes a mock client explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cohorts.enrollment_service import enroll_student
from learnpath.database import close_db, get_engine, get_session, init_db
from learnpath.db.base import Base
from learnpath.db.models import Cohort, Lesson, Module, Topic, User, Week
from learnpath.main import create_app

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)

session_scope = asynccontextmanager(get_session)


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[str, None]:
    """Initialize the engine on a throwaway SQLite file with all tables."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'learnpath_test.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield url
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for service calls and assertions."""
    async for session in get_session():
        yield session


@pytest_asyncio.fixture
async def client(database: str) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over ASGI. The engine is initialized by ``database``."""
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Course builder
# ---------------------------------------------------------------------------


@dataclass
class Course:
    """Ids of a seeded cohort. Objects are reloaded by tests as needed."""

    cohort_id: int
    student_id: int
    other_student_id: int
    instructor_id: int
    week_ids: list[int] = field(default_factory=list)
    module_ids: list[int] = field(default_factory=list)
    lesson_ids: list[int] = field(default_factory=list)
    topic_ids: list[int] = field(default_factory=list)


async def create_user(db: AsyncSession, email: str, name: str = "", role: str = "student") -> User:
    user = User(email=email, name=name or email.split("@")[0], role=role, created_at=NOW)
    db.add(user)
    await db.flush()
    return user


async def create_cohort(
    db: AsyncSession,
    status: str = "published",
    start_date: date | None = date(2024, 5, 10),
    capacity: int | None = None,
) -> Cohort:
    cohort = Cohort(title="Spring cohort", status=status, start_date=start_date, capacity=capacity)
    db.add(cohort)
    await db.flush()
    return cohort


async def create_week(
    db: AsyncSession,
    cohort: Cohort,
    week_number: int,
    unlock_rules: dict | None = None,
    drip_days: int = 0,
    completion_coin_reward: int = 0,
) -> Week:
    week = Week(
        cohort_id=cohort.id,
        week_number=week_number,
        title=f"Week {week_number}",
        unlock_rules=unlock_rules,
        drip_days=drip_days,
        completion_coin_reward=completion_coin_reward,
    )
    db.add(week)
    await db.flush()
    return week


async def create_lesson_chain(
    db: AsyncSession,
    week: Week,
    topic_rewards: list[int],
    lesson_reward: int = 0,
    module_reward: int = 0,
    module_order: int = 1,
    lesson_blocks: list[dict] | None = None,
    min_time_required_seconds: int | None = None,
) -> tuple[Module, Lesson, list[Topic]]:
    """One module holding one lesson with a topic per reward."""
    module = Module(week_id=week.id, order=module_order, title=f"Module {module_order}", coin_reward=module_reward)
    db.add(module)
    await db.flush()
    lesson = Lesson(
        module_id=module.id,
        order=1,
        title=f"Lesson {module_order}.1",
        coin_reward=lesson_reward,
        lesson_blocks=lesson_blocks,
        min_time_required_seconds=min_time_required_seconds,
    )
    db.add(lesson)
    await db.flush()
    topics = []
    for i, reward in enumerate(topic_rewards, start=1):
        topic = Topic(lesson_id=lesson.id, order=i, title=f"Topic {module_order}.1.{i}", coin_reward=reward)
        db.add(topic)
        topics.append(topic)
    await db.flush()
    return module, lesson, topics


@pytest_asyncio.fixture
async def course(db_session: AsyncSession) -> Course:
    """Two-week cohort with one enrolled student.

    Week 1: one module -> one lesson -> two topics (10 coins each); lesson
    pays 5, module 20, week completion 50. Week 2: one topic worth 10.
    """
    db = db_session
    student = await create_user(db, "ada@example.com", "Ada")
    other = await create_user(db, "grace@example.com", "Grace")
    instructor = await create_user(db, "alan@example.com", "Alan", role="instructor")

    cohort = await create_cohort(db)
    week1 = await create_week(db, cohort, 1, completion_coin_reward=50)
    week2 = await create_week(db, cohort, 2)
    module1, lesson1, topics1 = await create_lesson_chain(db, week1, [10, 10], lesson_reward=5, module_reward=20)
    module2, lesson2, topics2 = await create_lesson_chain(db, week2, [10])

    await enroll_student(db, None, student.id, cohort, now=NOW)
    await db.commit()

    return Course(
        cohort_id=cohort.id,
        student_id=student.id,
        other_student_id=other.id,
        instructor_id=instructor.id,
        week_ids=[week1.id, week2.id],
        module_ids=[module1.id, module2.id],
        lesson_ids=[lesson1.id, lesson2.id],
        topic_ids=[t.id for t in [*topics1, *topics2]],
    )
