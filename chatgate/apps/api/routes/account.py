from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import get_db, get_identity
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.apps.api.routes.subscription import SubscriptionStatusResponse, status_payload
from chatgate.services.access import decide_from_row
from chatgate.services.auth.identity import Identity
from chatgate.services.tenancy import ensure_profile


router = APIRouter(prefix="/account", tags=["account"], responses=DEFAULT_ERROR_RESPONSES)


class AccountResponse(BaseModel):
    user_id: str
    email: str
    workspace_id: str | None
    role: str
    created: bool
    subscription: SubscriptionStatusResponse


@router.post("/bootstrap", response_model=SuccessEnvelope[AccountResponse])
async def bootstrap_account(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # First login creates the owner workspace; later calls are no-ops.
    profile, created = await ensure_profile(db, identity)
    if created:
        response.status_code = status.HTTP_201_CREATED
    decision = decide_from_row(profile, datetime.now(timezone.utc))
    payload = AccountResponse(
        user_id=profile.id,
        email=profile.email,
        workspace_id=profile.workspace_id,
        role=profile.role,
        created=created,
        subscription=status_payload(decision, profile),
    )
    return success_response(request=request, data=payload)
