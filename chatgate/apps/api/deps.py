from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatgate.apps.api.rate_limit import (
    ROUTE_CLASS_CHAT,
    ROUTE_CLASS_MUTATION,
    ROUTE_CLASS_TRIAL,
    enforce_rate_limit,
)
from chatgate.core.config import get_settings
from chatgate.core.errors import AccessDenied, Unauthenticated
from chatgate.persistence.db import get_session
from chatgate.services.auth.identity import Identity, parse_bearer_token, verify_session_token
from chatgate.services.tenancy import TenantContext, resolve_tenant


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _identity_from_dev_headers(request: Request) -> Identity | None:
    # Identity headers are honoured only when the dev bypass is switched on.
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None
    return Identity(user_id=user_id, email=request.headers.get("X-User-Email") or "")


async def get_identity(request: Request) -> Identity:
    settings = get_settings()
    token = parse_bearer_token(request.headers.get("Authorization"))
    if token is None:
        if settings.auth_dev_bypass:
            identity = _identity_from_dev_headers(request)
            if identity is not None:
                return identity
        raise Unauthenticated()
    return verify_session_token(token)


async def get_tenant_context(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> TenantContext:
    return await resolve_tenant(db, identity)


async def reject_workspace_id_in_body(request: Request) -> None:
    # Reject client-supplied workspace ids; tenancy comes from the session only.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and ("workspace_id" in payload or "workspaceId" in payload):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "WORKSPACE_ID_NOT_ALLOWED",
                "message": "workspace_id must be derived from the session",
            },
        )


async def require_admin_credential(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    # Operator credential is separate from user sessions; unset means admin routes are closed.
    expected = get_settings().admin_api_token
    if not expected or not x_admin_token:
        raise AccessDenied("Admin credential required")
    if not hmac.compare_digest(expected.encode("utf-8"), x_admin_token.encode("utf-8")):
        logger.warning("admin_credential_rejected")
        raise AccessDenied("Admin credential required")


def rate_limited_context(route_class: str):
    # Resolve the tenant first so both user and workspace buckets are keyed on trusted ids.
    async def _dependency(
        response: Response,
        context: TenantContext = Depends(get_tenant_context),
    ) -> TenantContext:
        await enforce_rate_limit(
            response=response,
            user_id=context.user_id,
            workspace_id=context.workspace_id,
            route_class=route_class,
        )
        return context

    return _dependency


chat_context = rate_limited_context(ROUTE_CLASS_CHAT)
trial_context = rate_limited_context(ROUTE_CLASS_TRIAL)
mutation_context = rate_limited_context(ROUTE_CLASS_MUTATION)
