from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from chatgate.domain.models import Order, Profile
from chatgate.persistence.db import SessionLocal
from chatgate.services import recovery as recovery_module
from chatgate.services.recovery import run_recovery
from chatgate.tests.utils.accounts import create_account, utc_now


async def _paid_order(
    account_id: str,
    *,
    order_id: str,
    plan_id: str = "pro",
    payment_reference: str | None = "pay_ok",
    age: timedelta = timedelta(hours=1),
) -> None:
    # A settled order whose activation never happened.
    async with SessionLocal() as session:
        session.add(
            Order(
                id=order_id,
                account_id=account_id,
                plan_id=plan_id,
                billing_period="monthly",
                payment_reference=payment_reference,
                status="completed",
                created_at=utc_now() - age,
            )
        )
        await session.commit()


async def _snapshot() -> list[tuple]:
    async with SessionLocal() as session:
        rows = (await session.execute(select(Profile).order_by(Profile.id))).scalars().all()
        return [
            (
                row.id,
                row.subscription_status,
                row.subscription_tier,
                row.subscription_ends_at,
                row.payment_reference,
            )
            for row in rows
        ]


@pytest.mark.asyncio
async def test_recovery_activates_paid_accounts() -> None:
    user_id, _ = await create_account()
    await _paid_order(user_id, order_id="order_a", plan_id="ultra", payment_reference="pay_a")

    async with SessionLocal() as session:
        result = await run_recovery(session)
    assert result.checked == 1
    assert result.recovered == 1
    assert result.failures == []
    assert result.actions == [f"recovered {user_id}: ultra via order order_a"]

    async with SessionLocal() as session:
        profile = (await session.execute(select(Profile).where(Profile.id == user_id))).scalar_one()
    assert profile.subscription_status == "active"
    assert profile.subscription_tier == "ultra"
    assert profile.payment_reference == "pay_a"


@pytest.mark.asyncio
async def test_second_run_is_a_no_op() -> None:
    first_user, _ = await create_account()
    second_user, _ = await create_account()
    await _paid_order(first_user, order_id="order_1")
    await _paid_order(second_user, order_id="order_2", plan_id="basic", payment_reference="pay_2")

    async with SessionLocal() as session:
        first = await run_recovery(session)
    after_first = await _snapshot()
    async with SessionLocal() as session:
        second = await run_recovery(session)
    after_second = await _snapshot()

    assert first.recovered == 2
    assert second.recovered == 0
    assert second.checked == 0
    assert after_first == after_second


@pytest.mark.asyncio
async def test_one_broken_candidate_does_not_stop_the_batch() -> None:
    broken_user, _ = await create_account()
    good_user, _ = await create_account()
    await _paid_order(broken_user, order_id="order_broken", payment_reference=None)
    await _paid_order(good_user, order_id="order_good", payment_reference="pay_good")

    async with SessionLocal() as session:
        result = await run_recovery(session)
    assert result.checked == 2
    assert result.recovered == 1
    assert [failure.account_id for failure in result.failures] == [broken_user]
    assert result.as_dict()["failures"][0]["account_id"] == broken_user


@pytest.mark.asyncio
async def test_orders_outside_the_window_are_ignored() -> None:
    user_id, _ = await create_account()
    await _paid_order(user_id, order_id="order_old", age=timedelta(days=30))

    async with SessionLocal() as session:
        result = await run_recovery(session, window_days=7)
    assert result.checked == 0


@pytest.mark.asyncio
async def test_newest_order_per_account_wins() -> None:
    user_id, _ = await create_account()
    await _paid_order(user_id, order_id="order_older", plan_id="basic", age=timedelta(days=2))
    await _paid_order(
        user_id, order_id="order_newer", plan_id="ultra", payment_reference="pay_new"
    )

    async with SessionLocal() as session:
        result = await run_recovery(session)
    assert result.checked == 1
    assert result.actions == [f"recovered {user_id}: ultra via order order_newer"]


@pytest.mark.asyncio
async def test_running_higher_tier_is_skipped_not_downgraded() -> None:
    user_id, _ = await create_account(status="active", tier="ultra", days_left=20, payment_reference="pay_u")
    async with SessionLocal() as session:
        # Only non-active accounts are candidates; an active ultra account never shows up.
        await _paid_order(user_id, order_id="order_basic", plan_id="basic", payment_reference="pay_b")
        result = await run_recovery(session)
        profile = (await session.execute(select(Profile).where(Profile.id == user_id))).scalar_one()
    assert result.checked == 0
    assert profile.subscription_tier == "ultra"


@pytest.mark.asyncio
async def test_running_trial_is_not_a_candidate() -> None:
    user_id, _ = await create_account(status="trial", tier="ultra", has_used_trial=True, days_left=5)
    await _paid_order(user_id, order_id="order_trial", plan_id="basic", payment_reference="pay_t")

    async with SessionLocal() as session:
        result = await run_recovery(session)
        profile = (await session.execute(select(Profile).where(Profile.id == user_id))).scalar_one()
    assert result.checked == 0
    assert profile.subscription_status == "trial"
    assert profile.subscription_tier == "ultra"


@pytest.mark.asyncio
async def test_expired_account_with_paid_order_is_recovered() -> None:
    user_id, _ = await create_account(status="expired", tier="pro", has_used_trial=True)
    await _paid_order(user_id, order_id="order_exp", plan_id="pro", payment_reference="pay_exp")

    async with SessionLocal() as session:
        result = await run_recovery(session)
    assert result.recovered == 1


@pytest.mark.asyncio
async def test_unexpected_activation_error_is_isolated(monkeypatch) -> None:
    stuck_user, _ = await create_account()
    good_user, _ = await create_account()
    await _paid_order(stuck_user, order_id="order_stuck", payment_reference="pay_stuck")
    await _paid_order(good_user, order_id="order_fine", payment_reference="pay_fine", age=timedelta(hours=2))

    real_activate = recovery_module.activate_subscription

    async def flaky_activate(session, account_id, *args, **kwargs):
        if account_id == stuck_user:
            raise TimeoutError("activation timed out")
        return await real_activate(session, account_id, *args, **kwargs)

    monkeypatch.setattr(recovery_module, "activate_subscription", flaky_activate)

    async with SessionLocal() as session:
        result = await run_recovery(session)
    assert result.checked == 2
    assert result.recovered == 1
    assert [failure.account_id for failure in result.failures] == [stuck_user]
    assert result.failures[0].message == "Activation failed (TimeoutError)"
    assert result.actions == [f"recovered {good_user}: pro via order order_fine"]
