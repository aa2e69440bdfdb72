"""Pydantic request/response models for progress endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Requests ---


class TopicProgressRequest(BaseModel):
    percentage: float = Field(ge=0, le=100)
    time_spent_seconds: int = Field(default=0, ge=0)
    last_position_seconds: int | None = Field(default=None, ge=0)
    data: dict[str, Any] = Field(default_factory=dict)


class CompleteTopicRequest(BaseModel):
    completion_data: dict[str, Any] = Field(default_factory=dict)


# --- Responses ---


class CompletionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    topic_id: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    time_spent_seconds: int = 0
    last_position_seconds: int = 0
    completion_percentage: float = 0.0
    completion_method: str | None = None
    completion_data: dict[str, Any] | None = None
    coins_awarded: int = 0


class CascadeReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ok: bool
    error: str | None = None
    steps: list[str] = []
    week_completed: bool = False
    unlocked_week_id: int | None = None


class CompleteTopicResponse(BaseModel):
    record: CompletionRecordResponse
    already_completed: bool
    coins_awarded: int
    cascade: CascadeReportResponse
    next_item: dict[str, Any] | None = None


class TopicStateResponse(BaseModel):
    topic_id: int
    state: str
    record: CompletionRecordResponse | None = None


class WeekProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    week_id: int
    cohort_id: int
    completion_percentage: float
    is_unlocked: bool
    unlocked_at: datetime | None = None
    completed_at: datetime | None = None
