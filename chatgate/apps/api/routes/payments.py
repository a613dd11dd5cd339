from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import get_db, get_tenant_context, reject_workspace_id_in_body
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.apps.api.routes.subscription import SubscriptionStatusResponse, status_payload
from chatgate.domain.state import SubscriptionTier
from chatgate.services.access import decide_from_row
from chatgate.services.billing import create_checkout_order, verify_payment
from chatgate.services.tenancy import TenantContext


router = APIRouter(
    prefix="/payments",
    tags=["payments"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_workspace_id_in_body)],
)


class OrderRequest(BaseModel):
    plan_id: SubscriptionTier
    billing_period: Literal["monthly", "yearly"] = "monthly"

    model_config = {"extra": "forbid"}


class OrderResponse(BaseModel):
    order_id: str
    plan_id: str
    billing_period: str
    status: str


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=128)
    payment_id: str = Field(min_length=1, max_length=128)
    signature: str = Field(min_length=1, max_length=256)

    model_config = {"extra": "forbid"}


class VerifyPaymentResponse(BaseModel):
    activated: bool
    reason: str | None
    subscription: SubscriptionStatusResponse


@router.post("/orders", response_model=SuccessEnvelope[OrderResponse], status_code=status.HTTP_201_CREATED)
async def create_order(
    request: Request,
    body: OrderRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    order = await create_checkout_order(
        db,
        account_id=context.user_id,
        plan_id=body.plan_id.value,
        billing_period=body.billing_period,
    )
    payload = OrderResponse(
        order_id=order.id,
        plan_id=order.plan_id,
        billing_period=order.billing_period,
        status=order.status,
    )
    return success_response(request=request, data=payload)


@router.post("/verify", response_model=SuccessEnvelope[VerifyPaymentResponse])
async def verify(
    request: Request,
    body: VerifyPaymentRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The paying account is always the caller; orders of other accounts look missing.
    result = await verify_payment(
        db,
        account_id=context.user_id,
        order_id=body.order_id,
        payment_id=body.payment_id,
        signature=body.signature,
    )
    decision = decide_from_row(result.profile, datetime.now(timezone.utc))
    payload = VerifyPaymentResponse(
        activated=result.activated,
        reason=result.reason,
        subscription=status_payload(decision, result.profile),
    )
    return success_response(request=request, data=payload)
