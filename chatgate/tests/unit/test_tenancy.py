from __future__ import annotations

import pytest
from sqlalchemy import select, update

from chatgate.core.errors import AccessDenied, NoWorkspace, ProfileNotFound, Unauthenticated
from chatgate.domain.models import Profile, Workspace
from chatgate.domain.state import AccessStatus, SubscriptionTier
from chatgate.persistence.db import SessionLocal
from chatgate.services.auth.identity import Identity
from chatgate.services.bot_access import ACCESS_DENIED_MESSAGE, require_access_to, validate_access
from chatgate.services.tenancy import ensure_profile, resolve_tenant
from chatgate.tests.utils.accounts import create_account


@pytest.mark.asyncio
async def test_resolve_rejects_missing_identity() -> None:
    async with SessionLocal() as session:
        with pytest.raises(Unauthenticated):
            await resolve_tenant(session, None)
        with pytest.raises(Unauthenticated):
            await resolve_tenant(session, Identity(user_id="   "))


@pytest.mark.asyncio
async def test_resolve_rejects_unknown_profile() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ProfileNotFound):
            await resolve_tenant(session, Identity(user_id="ghost"))


@pytest.mark.asyncio
async def test_resolve_rejects_profile_without_workspace() -> None:
    async with SessionLocal() as session:
        session.add(Profile(id="loner", email="loner@example.com", workspace_id=None))
        await session.commit()
        with pytest.raises(NoWorkspace):
            await resolve_tenant(session, Identity(user_id="loner"))


@pytest.mark.asyncio
async def test_resolve_uses_the_effective_tier() -> None:
    user_id, workspace_id = await create_account(status="trial", has_used_trial=True, days_left=3)
    async with SessionLocal() as session:
        context = await resolve_tenant(session, Identity(user_id=user_id))
    assert context.workspace_id == workspace_id
    # Stored tier is basic; a running trial is always ultra.
    assert context.tier is SubscriptionTier.ULTRA
    assert context.status is AccessStatus.TRIAL
    assert context.access.has_access is True


@pytest.mark.asyncio
async def test_ensure_profile_is_idempotent() -> None:
    identity = Identity(user_id="first-login", email="jo@example.com")
    async with SessionLocal() as session:
        profile, created = await ensure_profile(session, identity)
        again, created_again = await ensure_profile(session, identity)
        workspaces = (await session.execute(select(Workspace))).scalars().all()
    assert created is True
    assert created_again is False
    assert again.workspace_id == profile.workspace_id
    assert len(workspaces) == 1
    assert profile.subscription_status == "none"
    assert profile.has_used_trial is False


@pytest.mark.asyncio
async def test_ensure_profile_binds_a_workspace_to_an_orphan_profile() -> None:
    async with SessionLocal() as session:
        session.add(Profile(id="orphan", email="orphan@example.com", workspace_id=None))
        await session.commit()
        profile, created = await ensure_profile(session, Identity(user_id="orphan"))
    assert created is True
    assert profile.workspace_id


@pytest.mark.asyncio
async def test_own_workspace_is_valid() -> None:
    user_id, workspace_id = await create_account(status="active", tier="pro", days_left=10)
    async with SessionLocal() as session:
        context = await resolve_tenant(session, Identity(user_id=user_id))
        validation = await validate_access(session, context, workspace_id)
    assert validation.valid is True
    assert validation.workspace_id == workspace_id
    assert validation.tier is SubscriptionTier.PRO
    assert validation.is_demo is False


@pytest.mark.asyncio
async def test_foreign_and_missing_workspaces_look_the_same() -> None:
    owner_one, workspace_one = await create_account()
    owner_two, _ = await create_account()
    async with SessionLocal() as session:
        intruder = await resolve_tenant(session, Identity(user_id=owner_two))
        foreign = await validate_access(session, intruder, workspace_one)
        missing = await validate_access(session, intruder, "does-not-exist")
        with pytest.raises(AccessDenied) as excinfo:
            await require_access_to(session, intruder, workspace_one)
    assert foreign.valid is False and missing.valid is False
    assert foreign.reason == missing.reason == ACCESS_DENIED_MESSAGE
    assert foreign.workspace_id is None
    assert excinfo.value.message == ACCESS_DENIED_MESSAGE
    assert workspace_one not in excinfo.value.message
    assert owner_one != owner_two


@pytest.mark.asyncio
async def test_moved_profile_loses_access_to_the_old_workspace() -> None:
    user_id, workspace_id = await create_account()
    async with SessionLocal() as session:
        context = await resolve_tenant(session, Identity(user_id=user_id))
        # The row changes after the context was resolved.
        await session.execute(
            update(Profile).where(Profile.id == user_id).values(workspace_id=None)
        )
        await session.commit()
        validation = await validate_access(session, context, workspace_id)
    assert validation.valid is False


@pytest.mark.asyncio
async def test_demo_resource_is_a_sandbox() -> None:
    user_id, _ = await create_account()
    async with SessionLocal() as session:
        context = await resolve_tenant(session, Identity(user_id=user_id))
        validation = await require_access_to(session, context, "demo")
    assert validation.valid is True
    assert validation.is_demo is True
    assert validation.workspace_id == "demo"
