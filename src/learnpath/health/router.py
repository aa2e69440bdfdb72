"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from learnpath.config import get_settings
from learnpath.dependencies import get_db
from learnpath.redis_client import get_optional_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check: returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> dict[str, object]:
    """Readiness check: database is required, Redis only degrades caching."""
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    redis = get_optional_redis()
    if redis is None:
        checks["cache"] = "disabled"
    else:
        try:
            await redis.ping()
            checks["cache"] = "ok"
        except Exception as exc:
            checks["cache"] = f"error: {exc}"

    status = "ready" if checks["database"] == "ok" else "unavailable"
    if status == "ready" and checks["cache"] not in ("ok", "disabled"):
        status = "degraded"
    return {"status": status, "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return service version and environment."""
    settings = get_settings()
    return {
        "service": "learnpath",
        "version": settings.app_version,
        "environment": settings.environment,
    }
