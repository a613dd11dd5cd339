from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import get_db, get_tenant_context, trial_context
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.domain.models import Profile
from chatgate.domain.state import as_utc
from chatgate.persistence.repos import profiles as profiles_repo
from chatgate.services.access import AccessDecision, decide_from_row
from chatgate.services.billing import start_trial
from chatgate.services.tenancy import TenantContext


router = APIRouter(prefix="/subscription", tags=["subscription"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionStatusResponse(BaseModel):
    status: str
    tier: str
    has_access: bool
    days_remaining: int
    is_trial_active: bool
    reason: str
    features: dict[str, Any]
    has_used_trial: bool = False
    trial_ends_at: datetime | None = None
    subscription_ends_at: datetime | None = None


def status_payload(decision: AccessDecision, profile: Profile | None) -> SubscriptionStatusResponse:
    # Dates come from the stored row; everything else from the decision.
    return SubscriptionStatusResponse(
        status=decision.status.value,
        tier=decision.tier.value,
        has_access=decision.has_access,
        days_remaining=decision.days_remaining,
        is_trial_active=decision.is_trial_active,
        reason=decision.reason,
        features=asdict(decision.features),
        has_used_trial=bool(profile.has_used_trial) if profile is not None else False,
        trial_ends_at=as_utc(profile.trial_ends_at) if profile is not None else None,
        subscription_ends_at=as_utc(profile.subscription_ends_at) if profile is not None else None,
    )


@router.get("/status", response_model=SuccessEnvelope[SubscriptionStatusResponse])
async def subscription_status(
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await profiles_repo.get_profile(db, context.user_id)
    return success_response(request=request, data=status_payload(context.access, profile))


@router.post("/trial", response_model=SuccessEnvelope[SubscriptionStatusResponse])
async def activate_trial(
    request: Request,
    context: TenantContext = Depends(trial_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Explicit opt-in only; eligibility alone never grants a trial.
    profile = await start_trial(db, context.user_id)
    decision = decide_from_row(profile, datetime.now(timezone.utc))
    return success_response(request=request, data=status_payload(decision, profile))
