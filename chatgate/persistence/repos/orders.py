from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.domain.models import Order, Profile


async def create_order(
    session: AsyncSession,
    *,
    order_id: str,
    account_id: str,
    plan_id: str,
    billing_period: str = "monthly",
) -> Order:
    order = Order(
        id=order_id,
        account_id=account_id,
        plan_id=plan_id,
        billing_period=billing_period,
        status="pending",
    )
    session.add(order)
    return order


async def get_order_for_account(
    session: AsyncSession, order_id: str, account_id: str
) -> Order | None:
    result = await session.execute(
        select(Order)
        .where(Order.id == order_id, Order.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def complete_order(session: AsyncSession, order_id: str, payment_reference: str) -> int:
    # pending -> completed only; a replayed verification leaves the row untouched.
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == "pending")
        .values(status="completed", payment_reference=payment_reference)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_unactivated_completed_orders(
    session: AsyncSession, *, since: datetime
) -> list[tuple[Order, Profile]]:
    # Completed payments whose account sits in none or expired. Trials are left alone.
    result = await session.execute(
        select(Order, Profile)
        .join(Profile, Profile.id == Order.account_id)
        .where(
            Order.status == "completed",
            Order.created_at >= since,
            Profile.subscription_status.in_(("none", "expired")),
        )
        .order_by(Order.created_at.desc(), Order.id)
    )
    return [(order, profile) for order, profile in result.all()]
