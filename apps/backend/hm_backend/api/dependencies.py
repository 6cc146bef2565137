from collections.abc import AsyncGenerator

from fastapi import Request
from hm_database.session import async_session_factory
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.core.config import get_settings

BEARER_PREFIX = "bearer "


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


def get_github_token(request: Request) -> str | None:
    """Caller's bearer token, else the configured fallback; None disables upstream fetches"""
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):].strip()
        if token:
            return token
    return get_settings().github_token or None
