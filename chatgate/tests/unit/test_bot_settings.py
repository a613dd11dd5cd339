from __future__ import annotations

from dataclasses import replace

import pytest

from chatgate.core.errors import AccessDenied, FeatureNotAvailable, ValidationError
from chatgate.domain.state import Role, SubscriptionTier
from chatgate.persistence.db import SessionLocal
from chatgate.services.access import TIER_FEATURES
from chatgate.services.auth.identity import Identity
from chatgate.services.bot_settings import (
    BotSettings,
    check_customization,
    editable_fields,
    get_bot_settings,
    update_bot_settings,
)
from chatgate.services.tenancy import resolve_tenant
from chatgate.tests.utils.accounts import create_account


async def _context(user_id: str):
    async with SessionLocal() as session:
        return await resolve_tenant(session, Identity(user_id=user_id, email=f"{user_id}@example.com"))


def test_field_gates_follow_the_tier() -> None:
    basic = TIER_FEATURES[SubscriptionTier.BASIC]
    pro = TIER_FEATURES[SubscriptionTier.PRO]
    ultra = TIER_FEATURES[SubscriptionTier.ULTRA]

    check_customization(pro, ["chatbot_name", "welcome_message"])
    check_customization(ultra, ["accent_color", "logo_url", "theme", "custom_css"])
    with pytest.raises(FeatureNotAvailable) as basic_exc:
        check_customization(basic, ["chatbot_name"])
    with pytest.raises(FeatureNotAvailable) as pro_exc:
        check_customization(pro, ["welcome_message", "custom_css"])
    with pytest.raises(ValidationError):
        check_customization(ultra, ["favicon"])

    assert basic_exc.value.details == {"field": "chatbot_name", "required_tier": "pro"}
    assert pro_exc.value.field == "custom_css"
    assert pro_exc.value.message == "Custom CSS requires Ultra plan"
    assert editable_fields(pro) == {
        "chatbot_name": True,
        "welcome_message": True,
        "accent_color": False,
        "logo_url": False,
        "theme": False,
        "custom_css": False,
    }


def test_masking_hides_fields_beyond_the_tier() -> None:
    stored = BotSettings(chatbot_name="Helper", accent_color="#112233", custom_css="a{}")
    assert stored.masked(TIER_FEATURES[SubscriptionTier.ULTRA]) == stored
    assert stored.masked(TIER_FEATURES[SubscriptionTier.PRO]) == BotSettings(chatbot_name="Helper")
    assert stored.masked(TIER_FEATURES[SubscriptionTier.BASIC]) == BotSettings()


@pytest.mark.asyncio
async def test_update_stores_sanitized_text() -> None:
    user_id, workspace_id = await create_account(status="active", tier="pro", days_left=30)
    context = await _context(user_id)
    async with SessionLocal() as session:
        saved = await update_bot_settings(
            session,
            context,
            {"chatbot_name": "  <b>Helper</b>  ", "welcome_message": "Hi onclick=alert(1)"},
        )
        reread = await get_bot_settings(session, workspace_id)
    assert saved.chatbot_name == "bHelper/b"
    assert saved.welcome_message == "Hi alert(1)"
    assert reread == saved


@pytest.mark.asyncio
async def test_refused_update_writes_nothing() -> None:
    user_id, workspace_id = await create_account(status="active", tier="pro", days_left=30)
    context = await _context(user_id)
    async with SessionLocal() as session:
        with pytest.raises(FeatureNotAvailable):
            await update_bot_settings(
                session, context, {"chatbot_name": "Helper", "accent_color": "#000000"}
            )
        stored = await get_bot_settings(session, workspace_id)
    assert stored == BotSettings()


@pytest.mark.asyncio
async def test_members_cannot_change_settings() -> None:
    user_id, _ = await create_account(status="trial", tier="ultra", has_used_trial=True, days_left=3)
    context = replace(await _context(user_id), role=Role.MEMBER)
    async with SessionLocal() as session:
        with pytest.raises(AccessDenied):
            await update_bot_settings(session, context, {"theme": "dark"})
