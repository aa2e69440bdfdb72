"""Progress API: all /api/v1/progress/* endpoints.

Handlers resolve ids, call one service operation and commit.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.coins import ledger_service
from learnpath.db.models import Cohort, Topic, Week
from learnpath.dependencies import get_current_user_id, get_db, get_redis_dep
from learnpath.progress import completion_service, overview_service, queries, unlock_service
from learnpath.progress.schemas import (
    CascadeReportResponse,
    CompleteTopicRequest,
    CompleteTopicResponse,
    CompletionRecordResponse,
    TopicProgressRequest,
    TopicStateResponse,
    WeekProgressResponse,
)

router = APIRouter(prefix="/api/v1/progress", tags=["Progress"])


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------


@router.post("/topics/{topic_id}/start", response_model=CompletionRecordResponse)
async def start_topic(
    topic_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CompletionRecordResponse:
    topic = await queries.get_or_404(db, Topic, topic_id)
    record = await completion_service.start_unit(db, user_id, topic)
    await db.commit()
    return CompletionRecordResponse.model_validate(record)


@router.post("/topics/{topic_id}/progress", response_model=CompletionRecordResponse)
async def update_topic_progress(
    topic_id: int,
    body: TopicProgressRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CompletionRecordResponse:
    """Report partial progress (video position, scroll depth, ...)."""
    topic = await queries.get_or_404(db, Topic, topic_id)
    extra: dict[str, Any] = {**body.data, "time_spent_seconds": body.time_spent_seconds}
    if body.last_position_seconds is not None:
        extra["last_position_seconds"] = body.last_position_seconds
    record = await completion_service.update_progress(db, user_id, topic, body.percentage, extra)
    await db.commit()
    return CompletionRecordResponse.model_validate(record)


@router.post("/topics/{topic_id}/complete", response_model=CompleteTopicResponse)
async def complete_topic(
    topic_id: int,
    body: CompleteTopicRequest | None = None,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> CompleteTopicResponse:
    """Complete a topic, award its coins once and cascade up to the week."""
    topic = await queries.get_or_404(db, Topic, topic_id)
    data = body.completion_data if body else {}
    result = await completion_service.complete_unit(db, redis, user_id, topic, data)
    next_item = await completion_service.get_next_item(db, topic)
    await db.commit()
    await ledger_service.invalidate_balance_cache(redis, user_id)
    return CompleteTopicResponse(
        record=CompletionRecordResponse.model_validate(result.record),
        already_completed=result.already_completed,
        coins_awarded=result.coins_awarded,
        cascade=CascadeReportResponse.model_validate(result.cascade),
        next_item=next_item,
    )


@router.get("/topics/{topic_id}/state", response_model=TopicStateResponse)
async def get_topic_state(
    topic_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> TopicStateResponse:
    topic = await queries.get_or_404(db, Topic, topic_id)
    state = await completion_service.get_state(db, user_id, topic)
    record = await completion_service.get_record(db, user_id, topic)
    return TopicStateResponse(
        topic_id=topic_id,
        state=state.value,
        record=CompletionRecordResponse.model_validate(record) if record else None,
    )


# ---------------------------------------------------------------------------
# Weeks and cohorts
# ---------------------------------------------------------------------------


@router.get("/weeks/{week_id}")
async def get_week_progress(
    week_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    week = await queries.get_or_404(db, Week, week_id)
    return await overview_service.get_week_overview(db, redis, user_id, week)


@router.post("/weeks/{week_id}/unlock", response_model=WeekProgressResponse)
async def unlock_week(
    week_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> WeekProgressResponse:
    """Unlock a week if its rules are satisfied right now (403 otherwise)."""
    week = await queries.get_or_404(db, Week, week_id)
    progress = await unlock_service.unlock_week(db, redis, user_id, week)
    await db.commit()
    return WeekProgressResponse.model_validate(progress)


@router.get("/weeks/{week_id}/unlock-requirements")
async def get_unlock_requirements(
    week_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    week = await queries.get_or_404(db, Week, week_id)
    return await unlock_service.get_unlock_requirements_summary(db, redis, user_id, week)


@router.get("/cohorts/{cohort_id}")
async def get_cohort_progress(
    cohort_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    cohort = await queries.get_or_404(db, Cohort, cohort_id)
    return await overview_service.get_cohort_overview(db, redis, user_id, cohort)


@router.get("/topics/{topic_id}/stats")
async def get_topic_stats(
    topic_id: int,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    topic = await queries.get_or_404(db, Topic, topic_id)
    return await completion_service.get_unit_statistics(db, topic)
