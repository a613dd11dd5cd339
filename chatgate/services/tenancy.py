from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.errors import DatabaseError, NoWorkspace, ProfileNotFound, Unauthenticated
from chatgate.domain.models import Profile, Workspace
from chatgate.domain.state import AccessStatus, Role, SubscriptionTier
from chatgate.persistence.repos import profiles as profiles_repo
from chatgate.services.access import AccessDecision, decide_from_row
from chatgate.services.auth.identity import Identity


logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class TenantContext:
    # Request-scoped tenant binding; built from the verified identity and stored profile only.
    user_id: str
    user_email: str
    workspace_id: str
    role: Role
    tier: SubscriptionTier
    status: AccessStatus
    access: AccessDecision


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def resolve_tenant(
    session: AsyncSession,
    identity: Identity | None,
    *,
    now: datetime | None = None,
) -> TenantContext:
    """Resolve the workspace a verified identity is allowed to touch.

    Raises ``Unauthenticated``, ``ProfileNotFound`` or ``NoWorkspace``; datastore
    failures are logged and re-raised as a generic ``DatabaseError``.
    """
    if identity is None or not identity.user_id or not identity.user_id.strip():
        raise Unauthenticated()

    try:
        profile = await profiles_repo.get_profile(session, identity.user_id)
    except SQLAlchemyError as exc:
        logger.error("tenant_resolve_failed user_id=%s", identity.user_id, exc_info=exc)
        raise DatabaseError() from exc

    if profile is None:
        logger.warning("tenant_profile_missing user_id=%s", identity.user_id)
        raise ProfileNotFound()
    if not profile.workspace_id:
        logger.error("tenant_workspace_missing user_id=%s", identity.user_id)
        raise NoWorkspace()

    decision = decide_from_row(profile, now or _utc_now())
    try:
        role = Role(profile.role)
    except ValueError:
        role = Role.MEMBER
    return TenantContext(
        user_id=identity.user_id,
        user_email=identity.email or profile.email or "",
        workspace_id=profile.workspace_id,
        role=role,
        tier=decision.tier,
        status=decision.status,
        access=decision,
    )


def _slugify(value: str) -> str:
    slug = _SLUG_RE.sub("-", value.lower()).strip("-")
    return slug or "workspace"


async def ensure_profile(
    session: AsyncSession,
    identity: Identity,
    *,
    id_factory: Callable[[], str] | None = None,
) -> tuple[Profile, bool]:
    """Create the owner workspace and profile on first login.

    Idempotent: an existing profile is returned untouched (``created=False``);
    a profile missing its workspace gets one bound.
    """
    if not identity.user_id:
        raise Unauthenticated()
    make_id = id_factory or (lambda: uuid4().hex)

    existing = await profiles_repo.get_profile(session, identity.user_id)
    if existing is not None and existing.workspace_id:
        return existing, False

    local_part = (identity.email or "").split("@", 1)[0] or "workspace"
    workspace_id = make_id()
    workspace = Workspace(
        id=workspace_id,
        name=f"{local_part}'s workspace",
        slug=f"{_slugify(local_part)}-{workspace_id[:8]}",
    )
    try:
        session.add(workspace)
        await session.flush()
        if existing is None:
            profile = Profile(
                id=identity.user_id,
                email=identity.email or "",
                workspace_id=workspace_id,
                role=Role.OWNER.value,
                subscription_status="none",
                subscription_tier="basic",
                has_used_trial=False,
            )
            session.add(profile)
        else:
            existing.workspace_id = workspace_id
            profile = existing
        await session.commit()
    except IntegrityError:
        # A concurrent first login won the race; return its row.
        await session.rollback()
        winner = await profiles_repo.refresh_profile(session, identity.user_id)
        if winner is None:
            raise
        return winner, False
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("profile_bootstrap_failed user_id=%s", identity.user_id, exc_info=exc)
        raise DatabaseError() from exc

    logger.info("profile_bootstrapped user_id=%s workspace_id=%s", identity.user_id, workspace_id)
    return profile, True
