from __future__ import annotations

from typing import Any


class ChatGateError(Exception):
    """Base error for chatgate.

    Every subclass carries a stable ``code`` and an HTTP ``status_code`` so the
    API layer can render it without inspecting the type. ``message`` must be
    safe to show to the caller.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(ChatGateError):
    """No identity, or an identity that failed verification."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class ProfileNotFound(ChatGateError):
    """Authenticated identity without an account row."""

    code = "PROFILE_NOT_FOUND"
    status_code = 404
    default_message = "User profile not found"


class NoWorkspace(ChatGateError):
    """Account exists but is not bound to a workspace."""

    code = "NO_WORKSPACE"
    status_code = 403
    default_message = "No workspace assigned"


class AccessDenied(ChatGateError):
    """Resource/tenant mismatch; never reveals whether the resource exists."""

    code = "ACCESS_DENIED"
    status_code = 403
    default_message = "Not found or access denied"


class SubscriptionRequired(ChatGateError):
    """Caller has no paid or trial access; the UI routes this to billing."""

    code = "SUBSCRIPTION_REQUIRED"
    status_code = 402
    default_message = "Subscription required"


class QuotaExceeded(ChatGateError):
    code = "QUOTA_EXCEEDED"
    status_code = 402
    default_message = "Quota exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        tier: str,
        limit: int,
        current: int | None = None,
        metric: str = "messages",
    ) -> None:
        self.tier = tier
        self.limit = limit
        self.current = current
        self.metric = metric
        super().__init__(
            message or f"Your {tier} plan allows {limit} {metric}",
            details={"tier": tier, "limit": limit, "current": current, "metric": metric},
        )


class ValidationError(ChatGateError):
    """Malformed or oversized input."""

    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Invalid request"


class RateLimited(ChatGateError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Rate limit exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after_ms: int = 1000,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retry_after_ms = retry_after_ms
        # Rendered as response headers by the API error handler.
        self.headers = {
            "Retry-After": str(max(1, -(-retry_after_ms // 1000))),
            "X-RateLimit-Retry-After-Ms": str(retry_after_ms),
        }
        super().__init__(message, details=details)


class TrialUnavailable(ChatGateError):
    code = "TRIAL_UNAVAILABLE"
    status_code = 409
    default_message = "Trial cannot be started"

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message, details={"reason": reason})


class PaymentVerificationError(ChatGateError):
    code = "PAYMENT_VERIFICATION_FAILED"
    status_code = 400
    default_message = "Payment verification failed"


class DatabaseError(ChatGateError):
    """Wrapped datastore failure; details stay in server logs."""

    code = "DATABASE_ERROR"
    status_code = 500
    default_message = "Internal server error"


class IntegrationUnavailableError(ChatGateError):
    """External integration is temporarily unavailable (circuit open)."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Service temporarily unavailable"


class RecoveryFailure(ChatGateError):
    """Per-account recovery failure; collected by the batch, never propagated."""

    code = "RECOVERY_FAILURE"

    def __init__(self, account_id: str, message: str) -> None:
        self.account_id = account_id
        super().__init__(message, details={"account_id": account_id})


class InvalidAccountState(ChatGateError):
    """Account fields violate the subscription invariants."""

    code = "INVALID_ACCOUNT_STATE"


class FeatureNotAvailable(ChatGateError):
    """Caller's effective tier does not include a customization feature."""

    code = "FEATURE_NOT_AVAILABLE"
    status_code = 403
    default_message = "Feature not available on your plan"

    def __init__(self, field: str, required_tier: str, message: str | None = None) -> None:
        self.field = field
        self.required_tier = required_tier
        super().__init__(message, details={"field": field, "required_tier": required_tier})
