"""Coin ledger: append-only transactions backing a materialized balance.

``coin_transactions`` is the source of truth. ``coin_balances`` is a
per-user projection that is only ever changed through atomic
``UPDATE ... SET col = col + :n`` statements issued from this module, so
concurrent awards never lose an increment.

Idempotency: a reward tied to a discrete source (topic #7, quiz #3, ...)
carries a UNIQUE ``idempotency_key``. The insert uses ON CONFLICT DO NOTHING;
a duplicate returns the transaction already on file and leaves the balance
untouched.

Services flush, the caller commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.cache import CacheKey, ProgressCache
from learnpath.coins.sources import SourceRef, TransactionType
from learnpath.config import get_settings
from learnpath.db.models import CoinBalance, CoinTransaction, Enrollment, User
from learnpath.db.upsert import insert_for
from learnpath.errors import ReconciliationError

logger = logging.getLogger(__name__)

_txn_table = CoinTransaction.__table__


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        msg = f"amount must be a positive integer, got {amount!r}"
        raise ValueError(msg)


# ---------------------------------------------------------------------------
# Balance primitives (atomic column updates only)
# ---------------------------------------------------------------------------


async def _ensure_balance_row(db: AsyncSession, user_id: int, now: datetime) -> None:
    stmt = (
        insert_for(db, CoinBalance)
        .values(user_id=user_id, total_balance=0, lifetime_earned=0, lifetime_spent=0, last_updated=now)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await db.execute(stmt)


async def _credit(db: AsyncSession, user_id: int, amount: int, now: datetime) -> int:
    await _ensure_balance_row(db, user_id, now)
    result = await db.execute(
        update(CoinBalance)
        .where(CoinBalance.user_id == user_id)
        .values(
            total_balance=CoinBalance.total_balance + amount,
            lifetime_earned=CoinBalance.lifetime_earned + amount,
            last_updated=now,
        )
        .returning(CoinBalance.total_balance)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one()


async def _debit(db: AsyncSession, user_id: int, amount: int, now: datetime) -> int | None:
    """Decrement only if the balance covers ``amount``. Returns the new balance or None."""
    result = await db.execute(
        update(CoinBalance)
        .where(CoinBalance.user_id == user_id, CoinBalance.total_balance >= amount)
        .values(
            total_balance=CoinBalance.total_balance - amount,
            lifetime_spent=CoinBalance.lifetime_spent + amount,
            last_updated=now,
        )
        .returning(CoinBalance.total_balance)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def _debit_clamped(db: AsyncSession, user_id: int, amount: int, now: datetime) -> int:
    """Debit up to ``amount`` without going below zero. Returns the amount applied."""
    await _ensure_balance_row(db, user_id, now)
    current = (
        await db.execute(
            select(CoinBalance.total_balance).where(CoinBalance.user_id == user_id).with_for_update()
        )
    ).scalar_one()
    applied = min(amount, current)
    if applied > 0 and await _debit(db, user_id, applied, now) is None:
        # Row is locked above; only reachable on backends without FOR UPDATE.
        applied = 0
    return applied


async def _append(
    db: AsyncSession,
    user_id: int,
    transaction_type: TransactionType,
    amount: int,
    source: SourceRef,
    description: str | None,
    metadata: dict[str, Any] | None,
    created_by: int | None,
    now: datetime,
) -> CoinTransaction:
    txn = CoinTransaction(
        user_id=user_id,
        transaction_type=transaction_type.value,
        amount=amount,
        source_type=source.type.value,
        source_id=source.id,
        description=description,
        tx_metadata=metadata,
        created_by=created_by,
        created_at=now,
    )
    db.add(txn)
    await db.flush()
    return txn


async def invalidate_balance_cache(redis: object | None, user_id: int) -> None:
    """Drop the cached balance. Routers call it again after commit to evict pre-commit reads."""
    await ProgressCache(redis).invalidate(CacheKey.coin_balance(user_id))


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


async def award(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    source: SourceRef,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    created_by: int | None = None,
    now: datetime | None = None,
) -> CoinTransaction:
    """Credit ``amount`` coins as an ``earned`` transaction.

    When ``source`` names a discrete event, at most one earned transaction
    exists per (user, source type, source id). Repeated calls return that
    transaction and do not touch the balance.
    """
    _require_positive(amount)
    now = now or datetime.now(timezone.utc)
    key = source.idempotency_key(user_id, TransactionType.EARNED)

    if key is None:
        txn = await _append(db, user_id, TransactionType.EARNED, amount, source, description, metadata, created_by, now)
    else:
        stmt = (
            insert_for(db, _txn_table)
            .values(
                user_id=user_id,
                transaction_type=TransactionType.EARNED.value,
                amount=amount,
                source_type=source.type.value,
                source_id=source.id,
                description=description,
                metadata=metadata,
                created_by=created_by,
                idempotency_key=key,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(_txn_table.c.id)
        )
        new_id = (await db.execute(stmt)).scalar_one_or_none()
        if new_id is None:
            existing = (
                await db.execute(select(CoinTransaction).where(CoinTransaction.idempotency_key == key))
            ).scalar_one()
            logger.info("Duplicate award ignored: user=%d key=%s", user_id, key)
            return existing
        txn = await db.get(CoinTransaction, new_id)

    balance = await _credit(db, user_id, amount, now)
    await invalidate_balance_cache(redis, user_id)
    logger.info(
        "Awarded %d coins to user %d (%s:%s), balance=%d", amount, user_id, source.type.value, source.id, balance
    )
    return txn  # type: ignore[return-value]


async def award_bonus(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    reason: str,
    awarded_by: int | None = None,
    now: datetime | None = None,
) -> CoinTransaction:
    """Discretionary staff bonus. Never idempotency-checked."""
    _require_positive(amount)
    now = now or datetime.now(timezone.utc)
    txn = await _append(
        db,
        user_id,
        TransactionType.BONUS,
        amount,
        SourceRef.bonus(),
        reason,
        {"reason": reason, "awarded_by": awarded_by},
        awarded_by,
        now,
    )
    await _credit(db, user_id, amount, now)
    await invalidate_balance_cache(redis, user_id)
    return txn


# ---------------------------------------------------------------------------
# Debits
# ---------------------------------------------------------------------------


async def spend(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    source: SourceRef,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> CoinTransaction | None:
    """Debit ``amount`` coins. Returns None (no transaction) on insufficient funds."""
    _require_positive(amount)
    now = now or datetime.now(timezone.utc)

    new_balance = await _debit(db, user_id, amount, now)
    if new_balance is None:
        logger.info("Insufficient funds: user=%d requested=%d", user_id, amount)
        return None

    txn = await _append(db, user_id, TransactionType.SPENT, -amount, source, description, metadata, None, now)
    await invalidate_balance_cache(redis, user_id)
    return txn


async def apply_penalty(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    reason: str,
    applied_by: int | None = None,
    now: datetime | None = None,
) -> CoinTransaction:
    """Debit up to ``amount``; the balance never goes below zero.

    The transaction amount is the debit actually applied so the ledger sum
    keeps matching the balance. The requested amount and reason are kept in
    metadata.
    """
    _require_positive(amount)
    now = now or datetime.now(timezone.utc)
    applied = await _debit_clamped(db, user_id, amount, now)
    txn = await _append(
        db,
        user_id,
        TransactionType.PENALTY,
        -applied,
        SourceRef.manual(),
        reason,
        {"reason": reason, "requested_amount": amount, "applied_amount": applied, "applied_by": applied_by},
        applied_by,
        now,
    )
    await invalidate_balance_cache(redis, user_id)
    if applied < amount:
        logger.warning("Penalty clamped for user %d: requested=%d applied=%d", user_id, amount, applied)
    return txn


async def adjust_balance(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    reason: str,
    adjusted_by: int | None = None,
    now: datetime | None = None,
) -> CoinTransaction:
    """Signed manual correction by staff. Each call is a new deliberate action."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        msg = f"adjustment must be a non-zero integer, got {amount!r}"
        raise ValueError(msg)
    now = now or datetime.now(timezone.utc)

    if amount > 0:
        await _credit(db, user_id, amount, now)
        applied = amount
    else:
        applied = -(await _debit_clamped(db, user_id, -amount, now))

    txn = await _append(
        db,
        user_id,
        TransactionType.ADJUSTMENT,
        applied,
        SourceRef.manual(),
        reason,
        {"reason": reason, "requested_amount": amount, "adjusted_by": adjusted_by},
        adjusted_by,
        now,
    )
    await invalidate_balance_cache(redis, user_id)
    return txn


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _balance_query(user_id: int) -> Any:  # noqa: ANN401
    return select(CoinBalance).where(CoinBalance.user_id == user_id).execution_options(populate_existing=True)


async def _load_balance(db: AsyncSession, user_id: int) -> CoinBalance:
    """Balance row that is known to exist (created by ``_ensure_balance_row``)."""
    return (await db.execute(_balance_query(user_id))).scalar_one()


async def get_balance(db: AsyncSession, user_id: int) -> CoinBalance | None:
    return (await db.execute(_balance_query(user_id))).scalar_one_or_none()


async def get_or_create_balance(db: AsyncSession, user_id: int) -> CoinBalance:
    """Get or create the balance row for a user (zeros when new)."""
    await _ensure_balance_row(db, user_id, datetime.now(timezone.utc))
    return await _load_balance(db, user_id)


async def get_cached_balance(db: AsyncSession, redis: object | None, user_id: int) -> int:
    """Current total balance, read through the Redis cache."""
    cache = ProgressCache(redis)
    key = CacheKey.coin_balance(user_id)
    cached = await cache.get(key)
    if isinstance(cached, int):
        return cached

    row = await get_balance(db, user_id)
    total = row.total_balance if row else 0
    await cache.set(key, total, get_settings().balance_cache_ttl_seconds)
    return total


async def has_earned(db: AsyncSession, user_id: int, source: SourceRef) -> bool:
    """True when an ``earned`` transaction already exists for this exact source."""
    result = await db.execute(
        select(CoinTransaction.id)
        .where(
            CoinTransaction.user_id == user_id,
            CoinTransaction.transaction_type == TransactionType.EARNED.value,
            CoinTransaction.source_type == source.type.value,
            CoinTransaction.source_id == source.id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_history(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    transaction_type: TransactionType | None = None,
) -> tuple[list[CoinTransaction], int]:
    """Newest-first transaction page and the total count."""
    query = select(CoinTransaction).where(CoinTransaction.user_id == user_id)
    count_query = select(func.count()).select_from(CoinTransaction).where(CoinTransaction.user_id == user_id)
    if transaction_type is not None:
        query = query.where(CoinTransaction.transaction_type == transaction_type.value)
        count_query = count_query.where(CoinTransaction.transaction_type == transaction_type.value)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(desc(CoinTransaction.created_at), desc(CoinTransaction.id)).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), total


async def get_earnings_by_source(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Sum of positive movements grouped by source type."""
    result = await db.execute(
        select(CoinTransaction.source_type, func.sum(CoinTransaction.amount))
        .where(CoinTransaction.user_id == user_id, CoinTransaction.amount > 0)
        .group_by(CoinTransaction.source_type)
    )
    return {source_type: int(total or 0) for source_type, total in result.all()}


def _student_balances(cohort_id: int | None) -> Any:  # noqa: ANN401
    query = select(CoinBalance).join(User, User.id == CoinBalance.user_id).where(User.role == "student")
    if cohort_id is not None:
        query = query.where(
            CoinBalance.user_id.in_(select(Enrollment.user_id).where(Enrollment.cohort_id == cohort_id))
        )
    return query


async def get_leaderboard(
    db: AsyncSession,
    limit: int | None = None,
    cohort_id: int | None = None,
) -> list[dict[str, Any]]:
    """Students ordered by balance, optionally restricted to one cohort."""
    limit = limit or get_settings().leaderboard_default_limit
    query = (
        _student_balances(cohort_id)
        .add_columns(User.name)
        .order_by(desc(CoinBalance.total_balance), CoinBalance.user_id)
        .limit(limit)
    )
    rows = (await db.execute(query)).all()
    return [
        {
            "rank": i,
            "user_id": balance.user_id,
            "name": name,
            "total_balance": balance.total_balance,
            "lifetime_earned": balance.lifetime_earned,
        }
        for i, (balance, name) in enumerate(rows, start=1)
    ]


async def get_rank(db: AsyncSession, user_id: int, cohort_id: int | None = None) -> int:
    """1 + number of students with a strictly higher balance."""
    row = await get_balance(db, user_id)
    mine = row.total_balance if row else 0
    ahead = _student_balances(cohort_id).where(CoinBalance.total_balance > mine).subquery()
    count = (await db.execute(select(func.count()).select_from(ahead))).scalar() or 0
    return count + 1


async def get_statistics(db: AsyncSession) -> dict[str, int]:
    """Platform-wide circulation figures."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(CoinBalance.total_balance), 0),
            func.coalesce(func.sum(CoinBalance.lifetime_earned), 0),
            func.coalesce(func.sum(CoinBalance.lifetime_spent), 0),
            func.count(CoinBalance.user_id),
        )
    )
    circulating, earned, spent, holders = result.one()
    return {
        "total_coins_in_circulation": int(circulating),
        "total_coins_earned": int(earned),
        "total_coins_spent": int(spent),
        "users_with_coins": int(holders),
    }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def _ledger_totals(db: AsyncSession, user_id: int) -> tuple[int, int, int]:
    """(sum, credits, debits) replayed from the transaction log."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(CoinTransaction.amount), 0),
            func.coalesce(func.sum(CoinTransaction.amount).filter(CoinTransaction.amount > 0), 0),
            func.coalesce(func.sum(CoinTransaction.amount).filter(CoinTransaction.amount < 0), 0),
        ).where(CoinTransaction.user_id == user_id)
    )
    total, credits, debits = result.one()
    return int(total), int(credits), -int(debits)


async def verify_balance(db: AsyncSession, user_id: int) -> CoinBalance | None:
    """Raise ReconciliationError if the balance row disagrees with the ledger."""
    total, earned, spent = await _ledger_totals(db, user_id)
    row = await get_balance(db, user_id)
    cached = row.total_balance if row else 0
    if cached != total or (row is not None and (row.lifetime_earned, row.lifetime_spent) != (earned, spent)):
        raise ReconciliationError(user_id, cached, total)
    return row


async def recalculate_balance(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    now: datetime | None = None,
) -> CoinBalance:
    """Replay the full history and overwrite the balance row (clamped at zero).

    Safe to run at any time; the only side effects are the balance row and
    its cache entry.
    """
    now = now or datetime.now(timezone.utc)
    total, earned, spent = await _ledger_totals(db, user_id)

    await _ensure_balance_row(db, user_id, now)
    row = await _load_balance(db, user_id)
    if row.total_balance != total:
        logger.warning("Balance drift for user %d: cached=%d ledger=%d", user_id, row.total_balance, total)

    await db.execute(
        update(CoinBalance)
        .where(CoinBalance.user_id == user_id)
        .values(total_balance=max(0, total), lifetime_earned=earned, lifetime_spent=spent, last_updated=now)
        .execution_options(synchronize_session=False)
    )
    await invalidate_balance_cache(redis, user_id)
    return await _load_balance(db, user_id)
