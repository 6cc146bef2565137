"""Shadow users and the subscriptions granted on involvement"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from .payloads import GitHubUser

logger = logging.getLogger(__name__)

# Registered users keep their own profile data; only shadow rows are refreshed.
# RETURNING yields nothing when the WHERE suppresses the update.
ENSURE_USER_SQL = text("""
    INSERT INTO public.users
        (github_id, login, avatar_url, name, email, registered, created_at, updated_at)
    VALUES
        (:github_id, :login, :avatar_url, :name, :email, false, now(), now())
    ON CONFLICT (github_id) DO UPDATE SET
        login = EXCLUDED.login,
        avatar_url = COALESCE(EXCLUDED.avatar_url, public.users.avatar_url),
        name = COALESCE(EXCLUDED.name, public.users.name),
        email = COALESCE(EXCLUDED.email, public.users.email),
        updated_at = now()
    WHERE public.users.registered = false
    RETURNING id
""")

SELECT_USER_ID_SQL = text("SELECT id FROM public.users WHERE github_id = :github_id")

SUBSCRIBE_TO_ISSUE_SQL = text("""
    INSERT INTO public.issue_subscriptions (user_id, issue_id, created_at)
    VALUES (:user_id, :issue_id, now())
    ON CONFLICT (user_id, issue_id) DO NOTHING
""")

SUBSCRIBE_TO_REPOSITORY_SQL = text("""
    INSERT INTO public.repository_subscriptions
        (user_id, repository_id, issues, pull_requests, releases, ci, mentions, activity, created_at)
    VALUES
        (:user_id, :repository_id, true, true, true, true, true, :activity, now())
    ON CONFLICT (user_id, repository_id) DO NOTHING
""")


async def ensure_user(session: AsyncSession, user: GitHubUser | None) -> int | None:
    """
    Creates a shadow user on first sight and returns the internal id.
    Returns None when the write fails; callers skip the dependent row.
    """
    if user is None:
        return None

    params = {
        "github_id": user.id,
        "login": user.login,
        "avatar_url": user.avatar_url,
        "name": user.name,
        "email": user.email,
    }

    try:
        result = await session.execute(ENSURE_USER_SQL, params)
        user_id = result.scalar_one_or_none()
        if user_id is None:
            result = await session.execute(SELECT_USER_ID_SQL, {"github_id": user.id})
            user_id = result.scalar_one_or_none()
        await session.commit()
        return user_id
    except SQLAlchemyError as e:
        await session.rollback()
        logger.debug(f"Failed to ensure user {user.login} ({user.id}): {e}")
        return None


async def ensure_users(session: AsyncSession, users: list[GitHubUser]) -> dict[int, int]:
    """Maps GitHub ids to internal ids, omitting users that could not be written"""
    resolved: dict[int, int] = {}
    for user in users:
        if user.id in resolved:
            continue
        user_id = await ensure_user(session, user)
        if user_id is not None:
            resolved[user.id] = user_id
    return resolved


async def subscribe_to_issue(session: AsyncSession, issue_id: int, user_id: int | None) -> None:
    if user_id is None:
        return
    try:
        await session.execute(SUBSCRIBE_TO_ISSUE_SQL, {"user_id": user_id, "issue_id": issue_id})
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.debug(f"Failed to subscribe user {user_id} to issue {issue_id}: {e}")


async def subscribe_to_repository(
    session: AsyncSession,
    repository_id: int,
    user_id: int,
    activity: bool = False,
) -> None:
    """Existing subscriptions keep the preferences the user chose"""
    try:
        await session.execute(
            SUBSCRIBE_TO_REPOSITORY_SQL,
            {"user_id": user_id, "repository_id": repository_id, "activity": activity},
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.warning(f"Failed to subscribe user {user_id} to repository {repository_id}: {e}")
