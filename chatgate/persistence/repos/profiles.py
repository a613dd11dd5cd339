from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.models import Profile, Workspace


async def get_profile(session: AsyncSession, account_id: str) -> Profile | None:
    result = await session.execute(select(Profile).where(Profile.id == account_id))
    return result.scalar_one_or_none()


async def get_profile_in_workspace(
    session: AsyncSession, account_id: str, workspace_id: str
) -> Profile | None:
    # Match on both keys so a foreign workspace id yields the same None as a missing one.
    result = await session.execute(
        select(Profile).where(Profile.id == account_id, Profile.workspace_id == workspace_id)
    )
    return result.scalar_one_or_none()


async def get_workspace(session: AsyncSession, workspace_id: str) -> Workspace | None:
    result = await session.execute(
        select(Workspace)
        .where(Workspace.id == workspace_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def update_workspace(session: AsyncSession, workspace_id: str, values: dict[str, Any]) -> int:
    result = await session.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def conditional_update(
    session: AsyncSession,
    account_id: str,
    *conditions: Any,
    values: dict[str, Any],
) -> int:
    # Single-statement compare-and-swap on the account row; returns affected rows.
    stmt = (
        update(Profile)
        .where(Profile.id == account_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def refresh_profile(session: AsyncSession, account_id: str) -> Profile | None:
    # Bypass the identity map so callers observe the committed row after an UPDATE.
    result = await session.execute(
        select(Profile).where(Profile.id == account_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def expire_matching(session: AsyncSession, *conditions: Any) -> int:
    # Bulk transition to expired; conditions must restrict to lapsed trial/active rows.
    result = await session.execute(
        update(Profile)
        .where(*conditions)
        .values(subscription_status="expired")
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
