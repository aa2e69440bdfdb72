"""Cohort enrollment API: /api/v1/cohorts/* endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cohorts import enrollment_service
from learnpath.db.models import Cohort
from learnpath.dependencies import get_current_user_id, get_db, get_redis_dep
from learnpath.progress.queries import get_or_404

router = APIRouter(prefix="/api/v1/cohorts", tags=["Cohorts"])


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    cohort_id: int
    status: str
    enrolled_at: datetime | None = None
    completed_at: datetime | None = None
    completion_percentage: float = 0.0


@router.post("/{cohort_id}/enroll", response_model=EnrollmentResponse, status_code=201)
async def enroll(
    cohort_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> EnrollmentResponse:
    cohort = await get_or_404(db, Cohort, cohort_id)
    enrollment = await enrollment_service.enroll_student(db, redis, user_id, cohort)
    await db.commit()
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/{cohort_id}/withdraw", response_model=EnrollmentResponse)
async def withdraw(
    cohort_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> EnrollmentResponse:
    cohort = await get_or_404(db, Cohort, cohort_id)
    enrollment = await enrollment_service.withdraw_student(db, redis, user_id, cohort)
    await db.commit()
    return EnrollmentResponse.model_validate(enrollment)


@router.get("/{cohort_id}/stats")
async def cohort_stats(
    cohort_id: int,
    db: AsyncSession = Depends(get_db),
) -> dict[str, object]:
    cohort = await get_or_404(db, Cohort, cohort_id)
    return await enrollment_service.get_cohort_stats(db, cohort)
