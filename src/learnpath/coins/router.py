"""Coin ledger API: all /api/v1/coins/* endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.coins import ledger_service
from learnpath.coins.schemas import (
    BalanceResponse,
    ReconcileResponse,
    SpendRequest,
    SpendResponse,
    TransactionHistoryResponse,
    TransactionResponse,
)
from learnpath.coins.sources import SourceRef, TransactionType
from learnpath.dependencies import get_current_user_id, get_db, get_redis_dep
from learnpath.errors import ReconciliationError

router = APIRouter(prefix="/api/v1/coins", tags=["Coins"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Current balance, lifetime totals and rank among students."""
    row = await ledger_service.get_balance(db, user_id)
    rank = await ledger_service.get_rank(db, user_id)
    return BalanceResponse(
        user_id=user_id,
        total_balance=row.total_balance if row else 0,
        lifetime_earned=row.lifetime_earned if row else 0,
        lifetime_spent=row.lifetime_spent if row else 0,
        rank=rank,
    )


@router.get("/transactions", response_model=TransactionHistoryResponse)
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    transaction_type: TransactionType | None = Query(None, alias="type"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> TransactionHistoryResponse:
    """Newest-first ledger entries for the acting student."""
    transactions, total = await ledger_service.get_history(
        db, user_id, limit=limit, offset=offset, transaction_type=transaction_type
    )
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/spend", response_model=SpendResponse)
async def spend_coins(
    body: SpendRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> SpendResponse:
    """Spend coins. Insufficient funds is a normal negative result, not an error."""
    try:
        source = SourceRef(body.source_type, body.source_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    txn = await ledger_service.spend(db, redis, user_id, body.amount, source, description=body.description)
    await db.commit()
    await ledger_service.invalidate_balance_cache(redis, user_id)

    balance = await ledger_service.get_cached_balance(db, redis, user_id)
    if txn is None:
        return SpendResponse(success=False, message="Insufficient balance", total_balance=balance)
    return SpendResponse(
        success=True,
        message="Coins spent",
        transaction=TransactionResponse.model_validate(txn),
        total_balance=balance,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_balance(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> ReconcileResponse:
    """Replay the ledger and heal the balance row."""
    try:
        await ledger_service.verify_balance(db, user_id)
        drift = False
    except ReconciliationError:
        drift = True
    balance = await ledger_service.recalculate_balance(db, redis, user_id)
    await db.commit()
    await ledger_service.invalidate_balance_cache(redis, user_id)
    return ReconcileResponse(
        user_id=user_id,
        total_balance=balance.total_balance,
        lifetime_earned=balance.lifetime_earned,
        lifetime_spent=balance.lifetime_spent,
        drift_detected=drift,
    )


@router.get("/leaderboard")
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    cohort_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, object]:
    """Top students by balance, optionally within one cohort."""
    entries = await ledger_service.get_leaderboard(db, limit=limit, cohort_id=cohort_id)
    return {"entries": entries}
