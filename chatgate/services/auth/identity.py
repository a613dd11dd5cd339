from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import jwt

from chatgate.core.config import get_settings
from chatgate.core.errors import Unauthenticated


logger = logging.getLogger(__name__)

_CLOCK_SKEW_SECONDS = 30


@dataclass(frozen=True)
class Identity:
    # Verified caller identity handed over by the session provider.
    user_id: str
    email: str = ""


def parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format; a missing header is reported as None.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthenticated("Missing or invalid bearer token")
    return parts[1]


def verify_session_token(token: str) -> Identity:
    """Verify a session JWT issued by the identity provider.

    Only ``sub`` and ``email`` are read; any signature, expiry or audience
    failure is reported as ``Unauthenticated`` without details.
    """
    settings = get_settings()
    options: dict[str, Any] = {"require": ["sub", "exp"]}
    decode_kwargs: dict[str, Any] = {}
    if settings.auth_jwt_audience:
        decode_kwargs["audience"] = settings.auth_jwt_audience
    else:
        options["verify_aud"] = False
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options=options,
            leeway=_CLOCK_SKEW_SECONDS,
            **decode_kwargs,
        )
    except jwt.PyJWTError as exc:
        logger.info("session_token_rejected reason=%s", type(exc).__name__)
        raise Unauthenticated("Invalid or expired session") from exc
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise Unauthenticated("Invalid or expired session")
    return Identity(user_id=subject, email=str(claims.get("email") or ""))


def issue_session_token(
    user_id: str,
    *,
    email: str = "",
    expires_in_s: int = 3600,
    secret: str | None = None,
) -> str:
    # Mint tokens compatible with verify_session_token for scripts and tests.
    settings = get_settings()
    now = int(time.time())
    claims: dict[str, Any] = {"sub": user_id, "email": email, "iat": now, "exp": now + expires_in_s}
    if settings.auth_jwt_audience:
        claims["aud"] = settings.auth_jwt_audience
    return jwt.encode(
        claims, secret or settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm
    )
