from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chatgate.core.errors import InvalidAccountState


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


class SubscriptionTier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ULTRA = "ultra"


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class AccessStatus(str, Enum):
    # Decision-level status; adds "eligible" on top of the stored statuses.
    NONE = "none"
    ELIGIBLE = "eligible"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TIER_RANK = {
    SubscriptionTier.BASIC: 0,
    SubscriptionTier.PRO: 1,
    SubscriptionTier.ULTRA: 2,
}


def as_utc(value: datetime | None) -> datetime | None:
    # Some drivers (sqlite) hand back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Account:
    """Closed view of a profile row used by the access calculator.

    Construction rejects the states the subscription model forbids: an active
    subscription without an end date, or a trial without a trial end.
    """

    id: str
    email: str
    workspace_id: str | None
    role: Role
    subscription_status: SubscriptionStatus
    subscription_tier: SubscriptionTier
    trial_ends_at: datetime | None
    subscription_ends_at: datetime | None
    has_used_trial: bool
    payment_reference: str | None

    def __post_init__(self) -> None:
        if (
            self.subscription_status is SubscriptionStatus.ACTIVE
            and self.subscription_ends_at is None
        ):
            raise InvalidAccountState("active subscription requires subscription_ends_at")
        if self.subscription_status is SubscriptionStatus.TRIAL and self.trial_ends_at is None:
            raise InvalidAccountState("trial status requires trial_ends_at")
        object.__setattr__(self, "trial_ends_at", as_utc(self.trial_ends_at))
        object.__setattr__(self, "subscription_ends_at", as_utc(self.subscription_ends_at))

    @classmethod
    def from_row(cls, row: Any) -> "Account":
        # Accept ORM rows or any attribute bag with the profile columns.
        try:
            return cls(
                id=str(row.id),
                email=row.email or "",
                workspace_id=row.workspace_id,
                role=Role(row.role or Role.MEMBER.value),
                subscription_status=SubscriptionStatus(row.subscription_status or "none"),
                subscription_tier=SubscriptionTier(row.subscription_tier or "basic"),
                trial_ends_at=row.trial_ends_at,
                subscription_ends_at=row.subscription_ends_at,
                has_used_trial=bool(row.has_used_trial),
                payment_reference=row.payment_reference or None,
            )
        except ValueError as exc:
            # Unknown enum values are an anomalous record, not a new state.
            raise InvalidAccountState(str(exc)) from exc


def parse_tier(value: str | None) -> SubscriptionTier | None:
    if value is None:
        return None
    try:
        return SubscriptionTier(value)
    except ValueError:
        return None
