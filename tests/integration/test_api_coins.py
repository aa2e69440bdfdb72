"""Coin endpoints over HTTP."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from learnpath.coins import ledger_service
from learnpath.db.models import CoinBalance
from learnpath.dependencies import get_redis_dep
from learnpath.main import create_app

from conftest import session_scope


def _as(user_id: int) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


async def _seed(course) -> None:
    async with session_scope() as db:
        await ledger_service.award_bonus(db, None, course.student_id, 100, "Welcome")
        await ledger_service.award_bonus(db, None, course.other_student_id, 30, "Welcome")
        await ledger_service.award_bonus(db, None, course.instructor_id, 500, "Staff")
        await db.commit()


class TestBalance:
    @pytest.mark.asyncio
    async def test_empty_balance(self, client: AsyncClient, course):
        response = await client.get("/api/v1/coins/balance", headers=_as(course.student_id))
        assert response.status_code == 200
        assert response.json() == {
            "user_id": course.student_id,
            "total_balance": 0,
            "lifetime_earned": 0,
            "lifetime_spent": 0,
            "rank": 1,
        }

    @pytest.mark.asyncio
    async def test_rank_ignores_staff(self, client: AsyncClient, course):
        await _seed(course)
        first = (await client.get("/api/v1/coins/balance", headers=_as(course.student_id))).json()
        second = (await client.get("/api/v1/coins/balance", headers=_as(course.other_student_id))).json()
        assert (first["total_balance"], first["rank"]) == (100, 1)
        assert (second["total_balance"], second["rank"]) == (30, 2)


class TestSpend:
    @pytest.mark.asyncio
    async def test_spend_and_insufficient_funds(self, client: AsyncClient, course):
        await _seed(course)
        headers = _as(course.student_id)

        spent = await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 40, "description": "Hint"})
        assert spent.status_code == 200
        data = spent.json()
        assert data["success"] is True
        assert data["transaction"]["amount"] == -40
        assert data["transaction"]["source_type"] == "purchase"
        assert data["total_balance"] == 60

        refused = await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 500})
        assert refused.status_code == 200
        assert refused.json() == {
            "success": False,
            "message": "Insufficient balance",
            "transaction": None,
            "total_balance": 60,
        }

        balance = (await client.get("/api/v1/coins/balance", headers=headers)).json()
        assert balance["lifetime_spent"] == 40

    @pytest.mark.asyncio
    async def test_spend_rejects_bad_input(self, client: AsyncClient, course):
        headers = _as(course.student_id)
        assert (await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 0})).status_code == 422
        unknown = await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 5, "source_type": "lottery"})
        assert unknown.status_code == 422
        needs_id = await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 5, "source_type": "topic"})
        assert needs_id.status_code == 422
        assert "requires an id" in needs_id.json()["detail"]


class TestHistory:
    @pytest.mark.asyncio
    async def test_transactions_filter_and_paging(self, client: AsyncClient, course):
        await _seed(course)
        headers = _as(course.student_id)
        await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 10})
        await client.post("/api/v1/coins/spend", headers=headers, json={"amount": 15})

        everything = (await client.get("/api/v1/coins/transactions", headers=headers)).json()
        assert everything["total"] == 3
        assert [t["transaction_type"] for t in everything["transactions"]] == ["spent", "spent", "bonus"]

        spent = (await client.get("/api/v1/coins/transactions?type=spent&limit=1", headers=headers)).json()
        assert spent["total"] == 2
        assert spent["limit"] == 1
        assert len(spent["transactions"]) == 1

        bonus = (await client.get("/api/v1/coins/transactions?type=bonus", headers=headers)).json()
        assert bonus["transactions"][0]["metadata"]["reason"] == "Welcome"


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_heals_drift(self, client: AsyncClient, course):
        await _seed(course)
        headers = _as(course.student_id)

        clean = (await client.post("/api/v1/coins/reconcile", headers=headers)).json()
        assert clean["drift_detected"] is False
        assert clean["total_balance"] == 100

        async with session_scope() as db:
            await db.execute(
                update(CoinBalance).where(CoinBalance.user_id == course.student_id).values(total_balance=999)
            )
            await db.commit()

        healed = (await client.post("/api/v1/coins/reconcile", headers=headers)).json()
        assert healed["drift_detected"] is True
        assert healed["total_balance"] == 100
        assert healed["lifetime_earned"] == 100


class TestLeaderboard:
    @pytest.mark.asyncio
    async def test_students_only(self, client: AsyncClient, course):
        await _seed(course)
        entries = (await client.get("/api/v1/coins/leaderboard")).json()["entries"]
        assert [(e["rank"], e["user_id"], e["total_balance"]) for e in entries] == [
            (1, course.student_id, 100),
            (2, course.other_student_id, 30),
        ]

    @pytest.mark.asyncio
    async def test_cohort_filter(self, client: AsyncClient, course):
        await _seed(course)
        response = await client.get(f"/api/v1/coins/leaderboard?cohort_id={course.cohort_id}&limit=5")
        assert [e["name"] for e in response.json()["entries"]] == ["Ada"]


class TestCacheAfterCommit:
    @pytest.mark.asyncio
    async def test_spend_evicts_balance_after_commit(self, database, course):
        """The last eviction happens once the new balance is visible to other sessions."""
        await _seed(course)
        seen: list[int] = []

        async def record_delete(*_keys: str) -> int:
            async with session_scope() as db:
                row = await ledger_service.get_balance(db, course.student_id)
                seen.append(row.total_balance)
            return 1

        redis = AsyncMock()
        redis.get.return_value = None
        redis.delete.side_effect = record_delete

        async def fake_redis():
            yield redis

        app = create_app()
        app.dependency_overrides[get_redis_dep] = fake_redis
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/v1/coins/spend", headers=_as(course.student_id), json={"amount": 40})

        assert response.json()["total_balance"] == 60
        assert seen[-1] == 60
