"""Account subscription transitions.

Every transition on the account row is a single conditional UPDATE, so two
concurrent requests cannot both win a compare-and-swap (for example two trial
activations racing for the same account).
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import get_settings
from chatgate.core.errors import (
    DatabaseError,
    IntegrationUnavailableError,
    PaymentVerificationError,
    ProfileNotFound,
    TrialUnavailable,
    ValidationError,
)
from chatgate.domain.models import Order, Profile
from chatgate.domain.state import (
    TIER_RANK,
    OrderStatus,
    SubscriptionStatus,
    SubscriptionTier,
    as_utc,
    parse_tier,
)
from chatgate.persistence.repos import orders as orders_repo
from chatgate.persistence.repos import profiles as profiles_repo


logger = logging.getLogger(__name__)

BILLING_PERIOD_MONTHS = {"monthly": 1, "yearly": 12}


@dataclass(frozen=True)
class ActivationResult:
    activated: bool
    profile: Profile
    # Set when activation was skipped, e.g. "higher_tier_active" or "already_activated".
    reason: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    # Calendar month arithmetic; the day is clamped to the target month's length.
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    # Gateway signature: hex HMAC-SHA256 over "order_id|payment_id".
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


async def create_checkout_order(
    session: AsyncSession,
    *,
    account_id: str,
    plan_id: str,
    billing_period: str = "monthly",
) -> Order:
    # Pending order the gateway checkout settles; verify_payment completes it.
    if parse_tier(plan_id) is None:
        raise ValidationError(f"Unknown plan: {plan_id}")
    if billing_period not in BILLING_PERIOD_MONTHS:
        raise ValidationError(f"Unknown billing period: {billing_period}")
    try:
        order = await orders_repo.create_order(
            session,
            order_id=f"order_{uuid4().hex}",
            account_id=account_id,
            plan_id=plan_id,
            billing_period=billing_period,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("order_create_failed account_id=%s", account_id, exc_info=exc)
        raise DatabaseError() from exc
    logger.info("order_created account_id=%s order_id=%s plan=%s", account_id, order.id, plan_id)
    return order


def _higher_tiers(tier: SubscriptionTier) -> list[str]:
    return [t.value for t, rank in TIER_RANK.items() if rank > TIER_RANK[tier]]


async def activate_subscription(
    session: AsyncSession,
    account_id: str,
    plan_id: str,
    payment_reference: str,
    *,
    billing_period: str = "monthly",
    now: datetime | None = None,
) -> ActivationResult:
    """Move an account to ``active`` on ``plan_id``.

    Shared by payment verification and the recovery reconciler. The UPDATE
    refuses to replace a still-running subscription of a higher tier, so a
    late or replayed activation can never downgrade an account.
    """
    tier = parse_tier(plan_id)
    if tier is None:
        raise ValidationError(f"Unknown plan: {plan_id}")
    months = BILLING_PERIOD_MONTHS.get(billing_period)
    if months is None:
        raise ValidationError(f"Unknown billing period: {billing_period}")
    if not payment_reference:
        raise ValidationError("Payment reference is required")
    now = as_utc(now) if now is not None else _utc_now()

    conditions = []
    higher = _higher_tiers(tier)
    if higher:
        conditions.append(
            or_(
                Profile.subscription_status != SubscriptionStatus.ACTIVE.value,
                Profile.subscription_ends_at.is_(None),
                Profile.subscription_ends_at <= now,
                Profile.subscription_tier.not_in(higher),
            )
        )
    try:
        updated = await profiles_repo.conditional_update(
            session,
            account_id,
            *conditions,
            values={
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "subscription_tier": tier.value,
                "subscription_ends_at": add_months(now, months),
                "trial_ends_at": None,
                "payment_reference": payment_reference,
            },
        )
        await session.commit()
        profile = await profiles_repo.refresh_profile(session, account_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("subscription_activation_failed account_id=%s", account_id, exc_info=exc)
        raise DatabaseError() from exc

    if profile is None:
        raise ProfileNotFound()
    if updated == 0:
        logger.warning(
            "subscription_activation_skipped account_id=%s plan=%s current_tier=%s",
            account_id,
            tier.value,
            profile.subscription_tier,
        )
        return ActivationResult(activated=False, profile=profile, reason="higher_tier_active")
    logger.info(
        "subscription_activated account_id=%s tier=%s period=%s", account_id, tier.value, billing_period
    )
    return ActivationResult(activated=True, profile=profile)


async def verify_payment(
    session: AsyncSession,
    *,
    account_id: str,
    order_id: str,
    payment_id: str,
    signature: str,
    now: datetime | None = None,
) -> ActivationResult:
    settings = get_settings()
    secret = settings.payment_gateway_secret
    if not secret:
        raise IntegrationUnavailableError("Payment verification is not configured")
    expected = payment_signature(order_id, payment_id, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8")):
        logger.warning("payment_signature_invalid account_id=%s order_id=%s", account_id, order_id)
        raise PaymentVerificationError("Invalid payment signature")

    try:
        order = await orders_repo.get_order_for_account(session, order_id, account_id)
        if order is None:
            raise PaymentVerificationError("Order not found")
        plan_id, billing_period = order.plan_id, order.billing_period
        if order.status == OrderStatus.COMPLETED.value:
            if order.payment_reference != payment_id:
                raise PaymentVerificationError("Order already settled by another payment")
            profile = await profiles_repo.refresh_profile(session, account_id)
            if profile is not None and profile.payment_reference == payment_id and (
                profile.subscription_status == SubscriptionStatus.ACTIVE.value
            ):
                return ActivationResult(activated=False, profile=profile, reason="already_activated")
        elif order.status != OrderStatus.PENDING.value:
            raise PaymentVerificationError("Order is not payable")
        else:
            completed = await orders_repo.complete_order(session, order_id, payment_id)
            # Commit the order first; an activation failure after this point is
            # picked up by the recovery reconciler.
            await session.commit()
            if completed == 0:
                raise PaymentVerificationError("Order is not payable")
            logger.info("payment_verified account_id=%s order_id=%s", account_id, order_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("payment_verification_failed order_id=%s", order_id, exc_info=exc)
        raise DatabaseError() from exc

    return await activate_subscription(
        session,
        account_id,
        plan_id,
        payment_id,
        billing_period=billing_period,
        now=now,
    )


def _trial_refusal_reason(profile: Profile, now: datetime) -> str:
    status = profile.subscription_status
    if status == SubscriptionStatus.ACTIVE.value and (
        profile.subscription_ends_at is not None and as_utc(profile.subscription_ends_at) > now
    ):
        return "active-subscription"
    if status == SubscriptionStatus.TRIAL.value and (
        profile.trial_ends_at is not None and as_utc(profile.trial_ends_at) > now
    ):
        return "trial-already-active"
    if profile.has_used_trial:
        return "trial-already-used"
    return "not-eligible"


async def start_trial(
    session: AsyncSession, account_id: str, *, now: datetime | None = None
) -> Profile:
    """Grant the one-time trial.

    Only an account that has never used a trial, has no subscription state and
    has never paid qualifies; ``has_used_trial`` flips to true in the same statement.
    """
    now = as_utc(now) if now is not None else _utc_now()
    trial_days = get_settings().trial_length_days
    try:
        updated = await profiles_repo.conditional_update(
            session,
            account_id,
            Profile.has_used_trial.is_(False),
            Profile.subscription_status == SubscriptionStatus.NONE.value,
            Profile.payment_reference.is_(None),
            values={
                "subscription_status": SubscriptionStatus.TRIAL.value,
                "subscription_tier": SubscriptionTier.ULTRA.value,
                "trial_ends_at": now + timedelta(days=trial_days),
                "has_used_trial": True,
            },
        )
        await session.commit()
        profile = await profiles_repo.refresh_profile(session, account_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("trial_start_failed account_id=%s", account_id, exc_info=exc)
        raise DatabaseError() from exc

    if profile is None:
        raise TrialUnavailable("profile-not-found", "User profile not found")
    if updated == 0:
        reason = _trial_refusal_reason(profile, now)
        logger.info("trial_refused account_id=%s reason=%s", account_id, reason)
        raise TrialUnavailable(reason)
    logger.info("trial_started account_id=%s days=%s", account_id, trial_days)
    return profile


async def expire_lapsed_subscriptions(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Batch sweep: only trial/active rows whose end has passed move to expired.
    now = as_utc(now) if now is not None else _utc_now()
    lapsed = or_(
        and_(
            Profile.subscription_status == SubscriptionStatus.ACTIVE.value,
            Profile.subscription_ends_at.is_not(None),
            Profile.subscription_ends_at <= now,
        ),
        and_(
            Profile.subscription_status == SubscriptionStatus.TRIAL.value,
            Profile.trial_ends_at.is_not(None),
            Profile.trial_ends_at <= now,
        ),
    )
    try:
        expired = await profiles_repo.expire_matching(session, lapsed)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("subscription_expiry_sweep_failed", exc_info=exc)
        raise DatabaseError() from exc
    if expired:
        logger.info("subscriptions_expired count=%s", expired)
    return expired
