"""SaaS tenancy layer — tenant resolution, tokens, roles, quotas and usage accounting."""

from feedpulse.saas.accounts import AccountService, hash_password, verify_password
from feedpulse.saas.dispatch import (
    InProcessUsageDispatcher,
    RedisUsageDispatcher,
    UsageJob,
    process_usage_job,
    release_expired_invitations,
)
from feedpulse.saas.quota import QuotaGate, SubscriptionService
from feedpulse.saas.roles import ROLE_LEVELS, authorize, has_role, role_level
from feedpulse.saas.team import TeamResolver, TeamService
from feedpulse.saas.tokens import JWTManager, TokenIssuer
from feedpulse.saas.usage import UsageAccountant

__all__ = [
    "AccountService",
    "hash_password",
    "verify_password",
    "InProcessUsageDispatcher",
    "RedisUsageDispatcher",
    "UsageJob",
    "process_usage_job",
    "release_expired_invitations",
    "QuotaGate",
    "SubscriptionService",
    "ROLE_LEVELS",
    "authorize",
    "has_role",
    "role_level",
    "TeamResolver",
    "TeamService",
    "JWTManager",
    "TokenIssuer",
    "UsageAccountant",
]
