"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Header, HTTPException, status

from learnpath.database import get_session as _get_session
from learnpath.redis_client import get_optional_redis

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client (or None when caching is disabled)."""
    yield get_optional_redis()


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> int:
    """Acting student id, set by the upstream gateway in ``X-User-Id``."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header") from None
    if user_id <= 0:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")
    return user_id
