from __future__ import annotations

from typing import Any, Callable

from sqlalchemy import case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.models import UsageCounter
from chatgate.persistence.db import dialect_name
from chatgate.persistence.guards import require_workspace_id, workspace_predicate


_UPSERT_INSERTS: dict[str, Callable[..., Any]] = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _insert_for(session: AsyncSession) -> Callable[..., Any]:
    # Only dialects with INSERT ... ON CONFLICT are supported; never fall back to read-modify-write.
    name = dialect_name(session)
    try:
        return _UPSERT_INSERTS[name]
    except KeyError as exc:
        raise RuntimeError(f"usage counters require an upsert-capable dialect, got {name}") from exc


def _clamped(column, delta: int):
    # Counters never go negative; clamp inside the same statement.
    return case((column + delta < 0, 0), else_=column + delta)


async def get_counter(session: AsyncSession, workspace_id: str, month: str) -> UsageCounter | None:
    result = await session.execute(
        select(UsageCounter)
        .where(workspace_predicate(UsageCounter, workspace_id), UsageCounter.month == month)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def increment_conversations(
    session: AsyncSession, workspace_id: str, month: str, amount: int = 1
) -> int:
    # Atomic upsert-increment; concurrent callers for the same row cannot lose updates.
    insert = _insert_for(session)
    stmt = insert(UsageCounter).values(
        workspace_id=require_workspace_id(workspace_id),
        month=month,
        monthly_conversations=amount,
        monthly_uploads=0,
        total_stored_words=0,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounter.workspace_id, UsageCounter.month],
        set_={
            "monthly_conversations": UsageCounter.monthly_conversations + amount,
            "updated_at": func.now(),
        },
    ).returning(UsageCounter.monthly_conversations)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def adjust_storage(
    session: AsyncSession,
    workspace_id: str,
    month: str,
    *,
    word_delta: int,
    upload_delta: int,
) -> tuple[int, int]:
    # Signed deltas for document create/edit/delete, clamped at zero in one statement.
    insert = _insert_for(session)
    stmt = insert(UsageCounter).values(
        workspace_id=require_workspace_id(workspace_id),
        month=month,
        monthly_conversations=0,
        monthly_uploads=max(0, upload_delta),
        total_stored_words=max(0, word_delta),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounter.workspace_id, UsageCounter.month],
        set_={
            "monthly_uploads": _clamped(UsageCounter.monthly_uploads, upload_delta),
            "total_stored_words": _clamped(UsageCounter.total_stored_words, word_delta),
            "updated_at": func.now(),
        },
    ).returning(UsageCounter.total_stored_words, UsageCounter.monthly_uploads)
    result = await session.execute(stmt)
    words, uploads = result.one()
    return int(words), int(uploads)
