"""Pydantic request/response models for coin endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from learnpath.coins.sources import SourceType


class BalanceResponse(BaseModel):
    user_id: int
    total_balance: int
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    rank: int | None = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_type: str
    amount: int
    source_type: str
    source_id: int | None = None
    description: str | None = None
    metadata: dict | None = Field(default=None, validation_alias="tx_metadata")
    created_at: datetime | None = None


class TransactionHistoryResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class SpendRequest(BaseModel):
    amount: int = Field(gt=0)
    source_type: SourceType = SourceType.PURCHASE
    source_id: int | None = None
    description: str | None = Field(default=None, max_length=256)


class SpendResponse(BaseModel):
    success: bool
    message: str
    transaction: TransactionResponse | None = None
    total_balance: int


class ReconcileResponse(BaseModel):
    user_id: int
    total_balance: int
    lifetime_earned: int
    lifetime_spent: int
    drift_detected: bool
