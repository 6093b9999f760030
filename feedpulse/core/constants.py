"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Plan limits ──────────────────────────────────────────────────
UNLIMITED = -1                      # plan limit sentinel: always permits

# ── Team invitations ─────────────────────────────────────────────
INVITATION_TOKEN_BYTES = 32         # entropy of the single-use invitation secret
ACCOUNT_TOKEN_BYTES = 32            # verification, reset and email change secrets
DEFAULT_INVITATION_EXPIRY_DAYS = 7

# ── Accounts ─────────────────────────────────────────────────────
DEFAULT_DEACTIVATION_GRACE_DAYS = 15
EMAIL_VERIFICATION_EXPIRY_HOURS = 24
PASSWORD_RESET_EXPIRY_HOURS = 1
EMAIL_CHANGE_EXPIRY_HOURS = 24

# ── Tokens ───────────────────────────────────────────────────────
JWT_ALGORITHM = "HS256"
BEARER_SCHEME = "bearer"

# ── Usage queue ──────────────────────────────────────────────────
USAGE_QUEUE_KEY = "feedpulse:usage_queue"
USAGE_QUEUE_POLL_TIMEOUT = 5        # seconds for BRPOP
DEFAULT_USAGE_QUEUE_MAXSIZE = 1000
DEFAULT_USAGE_WORKERS = 2

# ── Request state keys ───────────────────────────────────────────
STATE_TENANT = "tenant"
STATE_SUBSCRIPTION = "subscription"
STATE_TRACK_RESOURCE = "track_resource_type"
STATE_RESOURCE_ID = "tracked_resource_id"

# ── Error messages ───────────────────────────────────────────────
MSG_UNAUTHORIZED = "Authentication is required to access this resource"
MSG_INSUFFICIENT_PRIVILEGES = "Insufficient privileges for this operation"
MSG_NO_SUBSCRIPTION = "No active subscription found"
MSG_SUBSCRIPTION_NOT_ACTIVE = "Subscription is not active"
MSG_SUBSCRIPTION_NOT_FOUND = "Subscription not found"
MSG_VERIFICATION_SENT = "If the account exists and is unverified, a verification email was sent"
MSG_PASSWORD_RESET_SENT = "If the account exists, a password reset email was sent"
