"""Bot customization settings.

Each field is gated by a flag on the caller's effective ``FeatureSet``:
name and greeting need pro, the visual fields need ultra. Reads mask
fields the current tier does not include, so a lapsed or downgraded
workspace falls back to the widget defaults without losing what it stored.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.core.errors import (
    AccessDenied,
    DatabaseError,
    FeatureNotAvailable,
    NoWorkspace,
    ValidationError,
)
from chatgate.domain.models import Workspace
from chatgate.domain.state import Role, SubscriptionTier
from chatgate.persistence.repos import profiles as profiles_repo
from chatgate.services.access import FeatureSet
from chatgate.services.sanitize import sanitize
from chatgate.services.tenancy import TenantContext


logger = logging.getLogger(__name__)

# field -> (FeatureSet flag, lowest tier that carries it, label for messages)
_FIELD_FEATURES: dict[str, tuple[str, SubscriptionTier, str]] = {
    "chatbot_name": ("can_customize_name", SubscriptionTier.PRO, "Chatbot name customization"),
    "welcome_message": ("can_customize_greeting", SubscriptionTier.PRO, "Welcome message customization"),
    "accent_color": ("can_customize_color", SubscriptionTier.ULTRA, "Color customization"),
    "logo_url": ("can_customize_logo", SubscriptionTier.ULTRA, "Logo customization"),
    "theme": ("can_customize_theme", SubscriptionTier.ULTRA, "Theme customization"),
    "custom_css": ("can_customize_css", SubscriptionTier.ULTRA, "Custom CSS"),
}

SETTINGS_FIELDS = tuple(_FIELD_FEATURES)

_TEXT_FIELDS = {"chatbot_name": 80, "welcome_message": 500}
_EDITOR_ROLES = (Role.OWNER, Role.ADMIN)


@dataclass(frozen=True)
class BotSettings:
    chatbot_name: str | None = None
    welcome_message: str | None = None
    accent_color: str | None = None
    logo_url: str | None = None
    theme: str | None = None
    custom_css: str | None = None

    @classmethod
    def from_workspace(cls, workspace: Workspace) -> "BotSettings":
        return cls(**{name: getattr(workspace, name) for name in SETTINGS_FIELDS})

    def masked(self, features: FeatureSet) -> "BotSettings":
        values = asdict(self)
        for name, (flag, _, _) in _FIELD_FEATURES.items():
            if not getattr(features, flag):
                values[name] = None
        return BotSettings(**values)


def editable_fields(features: FeatureSet) -> dict[str, bool]:
    return {name: bool(getattr(features, flag)) for name, (flag, _, _) in _FIELD_FEATURES.items()}


def check_customization(features: FeatureSet, fields: Any) -> None:
    """Raise on the first field the feature set does not include.

    Clearing a field (``None``) counts as customizing it.
    """
    for name in fields:
        entry = _FIELD_FEATURES.get(name)
        if entry is None:
            raise ValidationError(f"Unknown setting: {name}")
        flag, required, label = entry
        if not getattr(features, flag):
            plan = "Pro or Ultra plan" if required is SubscriptionTier.PRO else "Ultra plan"
            raise FeatureNotAvailable(name, required.value, f"{label} requires {plan}")


async def get_bot_settings(session: AsyncSession, workspace_id: str) -> BotSettings:
    workspace = await profiles_repo.get_workspace(session, workspace_id)
    if workspace is None:
        raise NoWorkspace()
    return BotSettings.from_workspace(workspace)


async def update_bot_settings(
    session: AsyncSession, context: TenantContext, changes: Mapping[str, Any]
) -> BotSettings:
    if context.role not in _EDITOR_ROLES:
        raise AccessDenied("Only workspace owners and admins can change bot settings")
    check_customization(context.access.features, changes)

    values: dict[str, Any] = {}
    for name, value in changes.items():
        if value is not None and name in _TEXT_FIELDS:
            value = sanitize(value, max_chars=_TEXT_FIELDS[name]) or None
        values[name] = value
    if not values:
        return await get_bot_settings(session, context.workspace_id)

    try:
        updated = await profiles_repo.update_workspace(session, context.workspace_id, values)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("bot_settings_update_failed workspace_id=%s", context.workspace_id, exc_info=exc)
        raise DatabaseError() from exc
    if updated == 0:
        raise NoWorkspace()
    logger.info(
        "bot_settings_updated workspace_id=%s fields=%s",
        context.workspace_id,
        ",".join(sorted(values)),
    )
    return await get_bot_settings(session, context.workspace_id)
