"""Custom exception hierarchy for FeedPulse.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with. Services raise these; ``feedpulse.api.errors`` renders
them.
"""

from __future__ import annotations

from typing import Any


class FeedPulseError(Exception):
    """Base exception for all FeedPulse errors."""

    code: str = "INTERNAL_SERVER_ERROR"
    status_code: int = 500

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}


# ── Authentication (401) ─────────────────────────────────────────

class AuthenticationError(FeedPulseError):
    """Caller could not be authenticated."""

    code = "UNAUTHORIZED"
    status_code = 401


class TokenInvalidError(AuthenticationError):
    """Bearer token is malformed, forged or expired. Causes are not distinguished."""

    code = "TOKEN_INVALID"


class InvalidCredentialsError(AuthenticationError):
    code = "INVALID_CREDENTIALS"


class EmailNotVerifiedError(AuthenticationError):
    code = "EMAIL_NOT_VERIFIED"


# ── Authorization (403) ──────────────────────────────────────────

class AuthorizationError(FeedPulseError):
    """Caller is authenticated but not allowed to do this."""

    code = "FORBIDDEN"
    status_code = 403


class InsufficientPrivilegesError(AuthorizationError):
    code = "INSUFFICIENT_PRIVILEGES"


class FeatureNotAvailableError(AuthorizationError):
    code = "FEATURE_NOT_AVAILABLE"


class QuotaExceededError(AuthorizationError):
    """Plan limit for a resource type reached in the current billing period."""

    code = "RESOURCE_LIMIT"


# ── Subscription (402) ───────────────────────────────────────────

class SubscriptionRequiredError(FeedPulseError):
    code = "NO_SUBSCRIPTION_FOUND"
    status_code = 402


class SubscriptionNotActiveError(SubscriptionRequiredError):
    code = "SUBSCRIPTION_NOT_ACTIVE"


# ── Entity errors ────────────────────────────────────────────────

class NotFoundError(FeedPulseError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(FeedPulseError):
    code = "CONFLICT"
    status_code = 409


class InvitationError(FeedPulseError):
    """Invitation token unknown, expired, already used or addressed to someone else."""

    code = "INVALID_INVITATION"
    status_code = 400


class AccountTokenError(FeedPulseError):
    """Email verification, password reset or email change token is unusable."""

    code = "INVALID_TOKEN"
    status_code = 400


class ValidationError(FeedPulseError):
    code = "BAD_REQUEST"
    status_code = 400


# ── Programmer errors ────────────────────────────────────────────

class UnknownResourceTypeError(FeedPulseError):
    """A resource type outside the closed set reached the usage layer."""

    code = "UNKNOWN_RESOURCE_TYPE"
