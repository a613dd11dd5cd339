from __future__ import annotations

from dataclasses import asdict
import re
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.deps import (
    get_db,
    get_tenant_context,
    mutation_context,
    reject_workspace_id_in_body,
)
from chatgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatgate.apps.api.response import SuccessEnvelope, success_response
from chatgate.services.bot_settings import (
    BotSettings,
    editable_fields,
    get_bot_settings,
    update_bot_settings,
)
from chatgate.services.tenancy import TenantContext


router = APIRouter(
    prefix="/settings",
    tags=["settings"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_workspace_id_in_body)],
)

_UNSAFE_CSS = re.compile(r"<|expression\s*\(|javascript:|@import|behavior\s*:", re.IGNORECASE)


class BotSettingsResponse(BaseModel):
    chatbot_name: str | None
    welcome_message: str | None
    accent_color: str | None
    logo_url: str | None
    theme: str | None
    custom_css: str | None
    # Which fields the caller's current tier may change.
    editable: dict[str, bool]


class BotSettingsUpdateRequest(BaseModel):
    chatbot_name: str | None = Field(default=None, max_length=80)
    welcome_message: str | None = Field(default=None, max_length=500)
    accent_color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    logo_url: str | None = Field(default=None, max_length=2048, pattern=r"^https://\S+$")
    theme: Literal["light", "dark", "auto"] | None = None
    custom_css: str | None = Field(default=None, max_length=10000)

    model_config = {"extra": "forbid"}

    @field_validator("custom_css")
    @classmethod
    def _reject_unsafe_css(cls, value: str | None) -> str | None:
        if value is not None and _UNSAFE_CSS.search(value):
            raise ValueError("custom_css contains disallowed constructs")
        return value


def _to_response(settings: BotSettings, context: TenantContext) -> BotSettingsResponse:
    features = context.access.features
    return BotSettingsResponse(
        **asdict(settings.masked(features)),
        editable=editable_fields(features),
    )


@router.get("", response_model=SuccessEnvelope[BotSettingsResponse])
async def read_settings(
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Stored values beyond the current tier are hidden, not deleted.
    settings = await get_bot_settings(db, context.workspace_id)
    return success_response(request=request, data=_to_response(settings, context))


@router.put("", response_model=SuccessEnvelope[BotSettingsResponse])
async def write_settings(
    request: Request,
    body: BotSettingsUpdateRequest,
    context: TenantContext = Depends(mutation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields present in the body are changed; an explicit null clears one.
    changes = {name: getattr(body, name) for name in body.model_fields_set}
    settings = await update_bot_settings(db, context, changes)
    return success_response(request=request, data=_to_response(settings, context))
