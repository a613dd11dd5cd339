from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.config import get_settings
from chatgate.core.errors import AccessDenied, DatabaseError
from chatgate.domain.state import SubscriptionTier
from chatgate.persistence.repos import profiles as profiles_repo
from chatgate.services.tenancy import TenantContext


logger = logging.getLogger(__name__)

# One message for "does not exist" and "not yours" so workspace ids cannot be enumerated.
ACCESS_DENIED_MESSAGE = "Bot not found or access denied"


@dataclass(frozen=True)
class AccessValidation:
    valid: bool
    workspace_id: str | None = None
    tier: SubscriptionTier | None = None
    reason: str | None = None
    # Demo requests run in a sandbox: no stored chat content, no usage accounting.
    is_demo: bool = False


def is_demo_resource(resource_id: str | None) -> bool:
    return bool(resource_id) and resource_id == get_settings().demo_workspace_id


async def validate_access(
    session: AsyncSession,
    context: TenantContext,
    resource_id: str | None,
) -> AccessValidation:
    if is_demo_resource(resource_id):
        return AccessValidation(
            valid=True,
            workspace_id=get_settings().demo_workspace_id,
            tier=SubscriptionTier.BASIC,
            is_demo=True,
        )
    if not resource_id or resource_id != context.workspace_id:
        # Cheap rejection before touching the store; same answer as a miss.
        return AccessValidation(valid=False, reason=ACCESS_DENIED_MESSAGE)

    try:
        profile = await profiles_repo.get_profile_in_workspace(
            session, context.user_id, resource_id
        )
    except SQLAlchemyError as exc:
        logger.error(
            "bot_access_lookup_failed user_id=%s resource_id=%s",
            context.user_id,
            resource_id,
            exc_info=exc,
        )
        raise DatabaseError() from exc

    if profile is None:
        return AccessValidation(valid=False, reason=ACCESS_DENIED_MESSAGE)
    return AccessValidation(valid=True, workspace_id=profile.workspace_id, tier=context.tier)


async def require_access_to(
    session: AsyncSession,
    context: TenantContext,
    resource_id: str | None,
) -> AccessValidation:
    validation = await validate_access(session, context, resource_id)
    if not validation.valid:
        logger.info(
            "bot_access_denied user_id=%s workspace_id=%s", context.user_id, context.workspace_id
        )
        raise AccessDenied(ACCESS_DENIED_MESSAGE)
    return validation
