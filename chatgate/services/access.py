"""Subscription access decisions.

``decide`` is the single place that turns an account row into an access
decision. It is pure: no I/O, no clock reads, and it never grants access to
an absent or malformed account.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import math

from chatgate.core.errors import SubscriptionRequired
from chatgate.domain.state import (
    TIER_RANK,
    Account,
    AccessStatus,
    SubscriptionStatus,
    SubscriptionTier,
    as_utc,
)


_DAY = timedelta(days=1)

UNLIMITED = -1


@dataclass(frozen=True)
class FeatureSet:
    can_customize_name: bool
    can_customize_greeting: bool
    can_customize_color: bool
    can_customize_logo: bool
    can_customize_theme: bool
    can_customize_css: bool
    # -1 means unlimited for every cap below.
    monthly_message_limit: int
    max_knowledge_items: int
    monthly_upload_limit: int
    per_upload_word_limit: int
    total_word_cap: int


TIER_FEATURES: dict[SubscriptionTier, FeatureSet] = {
    SubscriptionTier.BASIC: FeatureSet(
        can_customize_name=False,
        can_customize_greeting=False,
        can_customize_color=False,
        can_customize_logo=False,
        can_customize_theme=False,
        can_customize_css=False,
        monthly_message_limit=1000,
        max_knowledge_items=10,
        monthly_upload_limit=4,
        per_upload_word_limit=1000,
        total_word_cap=2000,
    ),
    SubscriptionTier.PRO: FeatureSet(
        can_customize_name=True,
        can_customize_greeting=True,
        can_customize_color=False,
        can_customize_logo=False,
        can_customize_theme=False,
        can_customize_css=False,
        monthly_message_limit=UNLIMITED,
        max_knowledge_items=100,
        monthly_upload_limit=10,
        per_upload_word_limit=5000,
        total_word_cap=15000,
    ),
    SubscriptionTier.ULTRA: FeatureSet(
        can_customize_name=True,
        can_customize_greeting=True,
        can_customize_color=True,
        can_customize_logo=True,
        can_customize_theme=True,
        can_customize_css=True,
        monthly_message_limit=UNLIMITED,
        max_knowledge_items=UNLIMITED,
        monthly_upload_limit=25,
        per_upload_word_limit=10000,
        total_word_cap=50000,
    ),
}


def features_for_tier(tier: SubscriptionTier) -> FeatureSet:
    return TIER_FEATURES[tier]


@dataclass(frozen=True)
class AccessDecision:
    status: AccessStatus
    tier: SubscriptionTier
    has_access: bool
    days_remaining: int
    is_trial_active: bool
    features: FeatureSet
    # Short machine-readable hint on which rule produced the decision.
    reason: str

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "tier": self.tier.value,
            "has_access": self.has_access,
            "days_remaining": self.days_remaining,
            "is_trial_active": self.is_trial_active,
            "reason": self.reason,
            "features": self.features.__dict__.copy(),
        }


def _days_until(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now) / _DAY))


def _denied(status: AccessStatus, tier: SubscriptionTier, reason: str) -> AccessDecision:
    # Without access only the basic feature set is exposed, whatever tier is displayed.
    return AccessDecision(
        status=status,
        tier=tier,
        has_access=False,
        days_remaining=0,
        is_trial_active=False,
        features=TIER_FEATURES[SubscriptionTier.BASIC],
        reason=reason,
    )


def decide(account: Account | None, now: datetime) -> AccessDecision:
    """Map an account and the current time to an access decision.

    Rules are evaluated in order and the first match wins:

    1. active subscription with an end date (expired once the end passes)
    2. running trial, always at the ultra tier
    3. trial-eligible account (never auto-granted)
    4. exhausted account
    5. anything else, including ``None``: no access
    """
    if account is None:
        return _denied(AccessStatus.NONE, SubscriptionTier.BASIC, "no_account")
    now = as_utc(now)

    if (
        account.subscription_status is SubscriptionStatus.ACTIVE
        and account.subscription_ends_at is not None
    ):
        ends_at = account.subscription_ends_at
        if ends_at > now:
            return AccessDecision(
                status=AccessStatus.ACTIVE,
                tier=account.subscription_tier,
                has_access=True,
                days_remaining=_days_until(ends_at, now),
                is_trial_active=False,
                features=TIER_FEATURES[account.subscription_tier],
                reason="active_subscription",
            )
        # Keep the paid tier for display while denying access.
        return _denied(AccessStatus.EXPIRED, account.subscription_tier, "subscription_expired")

    if (
        account.subscription_status is SubscriptionStatus.TRIAL
        and account.trial_ends_at is not None
        and account.trial_ends_at > now
    ):
        return AccessDecision(
            status=AccessStatus.TRIAL,
            tier=SubscriptionTier.ULTRA,
            has_access=True,
            days_remaining=_days_until(account.trial_ends_at, now),
            is_trial_active=True,
            features=TIER_FEATURES[SubscriptionTier.ULTRA],
            reason="trial_active",
        )

    if (
        not account.has_used_trial
        and not account.payment_reference
        and account.subscription_status is SubscriptionStatus.NONE
    ):
        return _denied(AccessStatus.ELIGIBLE, SubscriptionTier.BASIC, "trial_eligible")

    if account.has_used_trial or account.subscription_status in (
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.EXPIRED,
    ):
        return _denied(AccessStatus.EXPIRED, SubscriptionTier.BASIC, "access_exhausted")

    return _denied(AccessStatus.NONE, SubscriptionTier.BASIC, "no_access")


def decide_from_row(row, now: datetime) -> AccessDecision:
    # Anomalous rows fail closed instead of raising into request handlers.
    if row is None:
        return decide(None, now)
    try:
        account = Account.from_row(row)
    except Exception:  # noqa: BLE001 - any malformed row is treated as "no account"
        return _denied(AccessStatus.NONE, SubscriptionTier.BASIC, "invalid_account")
    return decide(account, now)


def tier_allows(current: SubscriptionTier, required: SubscriptionTier) -> bool:
    return TIER_RANK[current] >= TIER_RANK[required]


def require_access(
    decision: AccessDecision, min_tier: SubscriptionTier = SubscriptionTier.BASIC
) -> None:
    # Raise a billing-routable error instead of a generic failure.
    if not decision.has_access:
        raise SubscriptionRequired(
            "No active subscription or trial; upgrade required",
            details={"status": decision.status.value, "tier": decision.tier.value},
        )
    if not tier_allows(decision.tier, min_tier):
        raise SubscriptionRequired(
            f"{min_tier.value} subscription required",
            details={
                "status": decision.status.value,
                "tier": decision.tier.value,
                "required_tier": min_tier.value,
            },
        )
