"""Payment recovery reconciler.

Finds completed payments whose account is still ``none`` or ``expired``
(the activation step failed after the order was settled) and re-runs the
shared activation. Running trials are left alone. Safe to run repeatedly:
recovered accounts are no longer candidates on the next pass.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import get_settings
from chatgate.core.errors import ChatGateError, DatabaseError, RecoveryFailure
from chatgate.domain.state import SubscriptionStatus, as_utc
from chatgate.persistence.repos import orders as orders_repo
from chatgate.persistence.repos import profiles as profiles_repo
from chatgate.services.billing import activate_subscription
from chatgate.services.resilience import retry_async
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    checked: int = 0
    recovered: int = 0
    failures: list[RecoveryFailure] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "recovered": self.recovered,
            "failures": [
                {"account_id": failure.account_id, "message": failure.message}
                for failure in self.failures
            ],
            "actions": list(self.actions),
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _recover_one(
    session: AsyncSession,
    *,
    account_id: str,
    order_id: str,
    plan_id: str,
    payment_reference: str | None,
    billing_period: str,
    now: datetime,
) -> str:
    if not payment_reference:
        raise RecoveryFailure(account_id, f"Order {order_id} has no payment reference")

    result = await retry_async(
        lambda: activate_subscription(
            session,
            account_id,
            plan_id,
            payment_reference,
            billing_period=billing_period,
            now=now,
        ),
        label="recovery_activation",
    )
    if not result.activated:
        return f"skipped {account_id}: {result.reason}"

    # Re-read and confirm the row really holds what the order paid for.
    profile = await profiles_repo.refresh_profile(session, account_id)
    if profile is None:
        raise RecoveryFailure(account_id, "Profile disappeared during recovery")
    if profile.subscription_status != SubscriptionStatus.ACTIVE.value:
        raise RecoveryFailure(account_id, f"Status is {profile.subscription_status} after activation")
    if profile.subscription_tier != plan_id:
        raise RecoveryFailure(
            account_id, f"Tier is {profile.subscription_tier} after activation, expected {plan_id}"
        )
    if profile.payment_reference != payment_reference:
        raise RecoveryFailure(account_id, "Payment reference mismatch after activation")
    return f"recovered {account_id}: {plan_id} via order {order_id}"


async def run_recovery(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    window_days: int | None = None,
) -> RecoveryResult:
    now = as_utc(now) if now is not None else _utc_now()
    window_days = window_days if window_days is not None else get_settings().recovery_window_days
    since = now - timedelta(days=window_days)

    try:
        candidates = await orders_repo.list_unactivated_completed_orders(session, since=since)
    except SQLAlchemyError as exc:
        logger.error("recovery_candidate_query_failed", exc_info=exc)
        raise DatabaseError() from exc

    # Newest order per account wins; candidates arrive newest first.
    latest: dict[str, tuple[str, str, str | None, str]] = {}
    for order, _profile in candidates:
        if order.account_id not in latest:
            latest[order.account_id] = (
                order.id,
                order.plan_id,
                order.payment_reference,
                order.billing_period,
            )

    result = RecoveryResult()
    for account_id, (order_id, plan_id, payment_reference, billing_period) in latest.items():
        result.checked += 1
        try:
            action = await _recover_one(
                session,
                account_id=account_id,
                order_id=order_id,
                plan_id=plan_id,
                payment_reference=payment_reference,
                billing_period=billing_period,
                now=now,
            )
        except RecoveryFailure as exc:
            result.failures.append(exc)
            logger.warning("recovery_account_failed account_id=%s reason=%s", account_id, exc.message)
            continue
        except ChatGateError as exc:
            # One broken account must not stop the batch.
            await session.rollback()
            result.failures.append(RecoveryFailure(account_id, exc.message))
            logger.warning("recovery_account_failed account_id=%s reason=%s", account_id, exc.message)
            continue
        except Exception as exc:
            await session.rollback()
            result.failures.append(
                RecoveryFailure(account_id, f"Activation failed ({type(exc).__name__})")
            )
            logger.error("recovery_account_failed account_id=%s", account_id, exc_info=exc)
            continue
        result.actions.append(action)
        if action.startswith("recovered"):
            result.recovered += 1
            increment_counter("recovery_accounts_recovered_total")

    logger.info(
        "recovery_completed checked=%s recovered=%s failures=%s",
        result.checked,
        result.recovered,
        len(result.failures),
    )
    return result
