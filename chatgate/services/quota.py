from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.errors import DatabaseError, QuotaExceeded
from chatgate.domain.state import SubscriptionTier, parse_tier
from chatgate.persistence.repos import usage as usage_repo
from chatgate.services.access import UNLIMITED, features_for_tier


logger = logging.getLogger(__name__)

# Unknown tiers get a tiny cap: fail conservative, never permissive.
UNKNOWN_TIER_MESSAGE_LIMIT = 10

_MESSAGE_LIMITS: dict[SubscriptionTier, int] = {
    SubscriptionTier.ULTRA: UNLIMITED,
    SubscriptionTier.PRO: UNLIMITED,
    SubscriptionTier.BASIC: 1000,
}

_WORD_RE = re.compile(r"\S+")


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


@dataclass(frozen=True)
class UsageSnapshot:
    workspace_id: str
    month: str
    monthly_conversations: int
    monthly_uploads: int
    total_stored_words: int


def message_limit_for_tier(tier: SubscriptionTier | str | None) -> int:
    parsed = tier if isinstance(tier, SubscriptionTier) else parse_tier(tier)
    if parsed is None:
        return UNKNOWN_TIER_MESSAGE_LIMIT
    return _MESSAGE_LIMITS[parsed]


def month_key(now: datetime) -> str:
    # Calendar months are keyed in UTC as YYYY-MM.
    now = now.astimezone(timezone.utc) if now.tzinfo else now
    return f"{now.year:04d}-{now.month:02d}"


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _tier_label(tier: SubscriptionTier | str | None) -> str:
    if isinstance(tier, SubscriptionTier):
        return tier.value
    return str(tier or "unknown")


class QuotaService:
    """Per-workspace monthly counters and tier limits.

    Every write is a single upsert statement, so concurrent chat sessions for
    the same workspace cannot lose increments. Reads treat a missing row as a
    zero baseline.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic month rollover tests.
        self._time_provider = time_provider or _utc_now

    def current_month(self) -> str:
        return month_key(self._time_provider())

    async def get_usage(self, session: AsyncSession, workspace_id: str) -> UsageSnapshot:
        month = self.current_month()
        try:
            counter = await usage_repo.get_counter(session, workspace_id, month)
        except SQLAlchemyError as exc:
            logger.error("usage_read_failed workspace_id=%s", workspace_id, exc_info=exc)
            raise DatabaseError() from exc
        if counter is None:
            return UsageSnapshot(workspace_id, month, 0, 0, 0)
        return UsageSnapshot(
            workspace_id=workspace_id,
            month=month,
            monthly_conversations=int(counter.monthly_conversations or 0),
            monthly_uploads=int(counter.monthly_uploads or 0),
            total_stored_words=int(counter.total_stored_words or 0),
        )

    async def check_limit(
        self,
        session: AsyncSession,
        workspace_id: str,
        tier: SubscriptionTier | str | None,
    ) -> LimitCheck:
        limit = message_limit_for_tier(tier)
        usage = await self.get_usage(session, workspace_id)
        current = usage.monthly_conversations
        if limit == UNLIMITED:
            return LimitCheck(allowed=True, current=current, limit=limit)
        return LimitCheck(allowed=current < limit, current=current, limit=limit)

    async def enforce_limit(
        self,
        session: AsyncSession,
        workspace_id: str,
        tier: SubscriptionTier | str | None,
    ) -> LimitCheck:
        check = await self.check_limit(session, workspace_id, tier)
        if not check.allowed:
            logger.info(
                "message_limit_reached workspace_id=%s current=%s limit=%s",
                workspace_id,
                check.current,
                check.limit,
            )
            raise QuotaExceeded(
                f"Monthly message limit ({check.limit}) exceeded",
                tier=_tier_label(tier),
                limit=check.limit,
                current=check.current,
                metric="messages",
            )
        return check

    async def increment_usage(
        self, session: AsyncSession, workspace_id: str, *, commit: bool = True
    ) -> int:
        month = self.current_month()
        try:
            count = await usage_repo.increment_conversations(session, workspace_id, month)
            if commit:
                await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("usage_increment_failed workspace_id=%s", workspace_id, exc_info=exc)
            raise DatabaseError() from exc
        return count

    async def adjust_storage(
        self,
        session: AsyncSession,
        workspace_id: str,
        *,
        word_delta: int,
        upload_delta: int = 0,
    ) -> tuple[int, int]:
        # Caller owns the transaction so the delta commits with the document mutation.
        month = self.current_month()
        return await usage_repo.adjust_storage(
            session,
            workspace_id,
            month,
            word_delta=word_delta,
            upload_delta=upload_delta,
        )

    async def check_upload_allowed(
        self,
        session: AsyncSession,
        workspace_id: str,
        tier: SubscriptionTier,
        *,
        new_words: int,
        replaced_words: int = 0,
        is_new_upload: bool = True,
    ) -> None:
        """Apply the per-tier upload caps before a knowledge write.

        ``replaced_words`` is the word count of the version being replaced on
        edit, so an edit is charged only its delta against the stored cap.

        ``total_stored_words`` lives on the monthly counter row, so the
        stored-word cap in practice limits words written in the current
        month: it starts from zero each month, and deleting an item written
        in an earlier month only lowers the current month's row (clamped at
        zero).
        """
        features = features_for_tier(tier)
        if features.per_upload_word_limit != UNLIMITED and new_words > features.per_upload_word_limit:
            raise QuotaExceeded(
                f"Upload exceeds the {features.per_upload_word_limit} word limit of the {tier.value} plan",
                tier=tier.value,
                limit=features.per_upload_word_limit,
                current=new_words,
                metric="words_per_upload",
            )
        usage = await self.get_usage(session, workspace_id)
        if (
            is_new_upload
            and features.monthly_upload_limit != UNLIMITED
            and usage.monthly_uploads >= features.monthly_upload_limit
        ):
            raise QuotaExceeded(
                f"Monthly upload limit ({features.monthly_upload_limit}) reached for the {tier.value} plan",
                tier=tier.value,
                limit=features.monthly_upload_limit,
                current=usage.monthly_uploads,
                metric="uploads",
            )
        projected = usage.total_stored_words - replaced_words + new_words
        if features.total_word_cap != UNLIMITED and projected > features.total_word_cap:
            raise QuotaExceeded(
                f"Stored knowledge would exceed the {features.total_word_cap} word cap of the {tier.value} plan",
                tier=tier.value,
                limit=features.total_word_cap,
                current=usage.total_stored_words,
                metric="stored_words",
            )


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    # Cache the quota service for reuse across requests.
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Reset cached services for deterministic tests.
    global _quota_service
    _quota_service = None
