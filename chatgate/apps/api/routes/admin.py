from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import get_db, require_admin_credential
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.providers.embedding import HashedEmbeddingProvider
from chatgate.services.billing import expire_lapsed_subscriptions
from chatgate.services.recovery import run_recovery
from chatgate.services.telemetry import counters_snapshot, external_error_rate, gauges_snapshot


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin_credential)],
)


class RecoveryFailureResponse(BaseModel):
    account_id: str
    message: str


class RecoveryResponse(BaseModel):
    checked: int
    recovered: int
    failures: list[RecoveryFailureResponse]
    actions: list[str]


class ExpiryResponse(BaseModel):
    expired: int


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    # Failure share over the last five minutes; None when there were no calls.
    external_error_rate: dict[str, float | None]


@router.post("/recovery", response_model=SuccessEnvelope[RecoveryResponse])
async def recover_payments(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    result = await run_recovery(db)
    return success_response(request=request, data=RecoveryResponse(**result.as_dict()))


@router.post("/expire-subscriptions", response_model=SuccessEnvelope[ExpiryResponse])
async def expire_subscriptions(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    expired = await expire_lapsed_subscriptions(db)
    return success_response(request=request, data=ExpiryResponse(expired=expired))


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request) -> dict:
    # In-process view only; each API worker reports its own counters.
    integration = HashedEmbeddingProvider.integration
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        external_error_rate={integration: external_error_rate(integration)},
    )
    return success_response(request=request, data=payload)
