"""Composition root — builds repositories and services from settings."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from config.settings import Settings
from feedpulse.core.interfaces import (
    BaseAccountNotifier,
    BaseAccountRepository,
    BaseAccountTokenRepository,
    BaseInvitationNotifier,
    BaseSubscriptionRepository,
    BaseTeamInvitationRepository,
    BaseTeamMemberRepository,
    BaseUsageDispatcher,
    BaseUsageRepository,
)
from feedpulse.core.logging import get_logger
from feedpulse.saas.accounts import AccountService
from feedpulse.saas.dispatch import InProcessUsageDispatcher, RedisUsageDispatcher
from feedpulse.saas.memory import (
    InMemoryAccountRepository,
    InMemoryAccountTokenRepository,
    InMemorySubscriptionRepository,
    InMemoryTeamInvitationRepository,
    InMemoryTeamMemberRepository,
    InMemoryUsageRepository,
    LoggingAccountNotifier,
    LoggingInvitationNotifier,
)
from feedpulse.saas.quota import QuotaGate, SubscriptionService
from feedpulse.saas.team import TeamResolver, TeamService
from feedpulse.saas.tokens import JWTManager, TokenIssuer
from feedpulse.saas.usage import UsageAccountant

log = get_logger(__name__)


@dataclass
class Repositories:
    accounts: BaseAccountRepository
    team_members: BaseTeamMemberRepository
    invitations: BaseTeamInvitationRepository
    subscriptions: BaseSubscriptionRepository
    usage: BaseUsageRepository
    account_tokens: BaseAccountTokenRepository


@dataclass
class ServiceContainer:
    """Everything a request handler can depend on, wired once per process."""

    settings: Settings
    repos: Repositories
    team_resolver: TeamResolver
    token_issuer: TokenIssuer
    accounts: AccountService
    team: TeamService
    subscriptions: SubscriptionService
    quota: QuotaGate
    usage: UsageAccountant
    dispatcher: BaseUsageDispatcher


def memory_repositories() -> Repositories:
    return Repositories(
        accounts=InMemoryAccountRepository(),
        team_members=InMemoryTeamMemberRepository(),
        invitations=InMemoryTeamInvitationRepository(),
        subscriptions=InMemorySubscriptionRepository(),
        usage=InMemoryUsageRepository(),
        account_tokens=InMemoryAccountTokenRepository(),
    )


async def postgres_repositories() -> Repositories:
    from feedpulse.api.db.accounts import AccountRepository
    from feedpulse.api.db.subscriptions import SubscriptionRepository
    from feedpulse.api.db.team import TeamInvitationRepository, TeamMemberRepository
    from feedpulse.api.db.tokens import AccountTokenRepository
    from feedpulse.api.db.usage import UsageRepository
    from feedpulse.data.db import get_engine

    engine = await get_engine()
    return Repositories(
        accounts=AccountRepository(engine),
        team_members=TeamMemberRepository(engine),
        invitations=TeamInvitationRepository(engine),
        subscriptions=SubscriptionRepository(engine),
        usage=UsageRepository(engine),
        account_tokens=AccountTokenRepository(engine),
    )


def build_container(
    settings: Settings,
    repos: Repositories,
    notifier: BaseInvitationNotifier | None = None,
    dispatcher: BaseUsageDispatcher | None = None,
    account_notifier: BaseAccountNotifier | None = None,
) -> ServiceContainer:
    """Wire services over ``repos``. Secrets come from ``settings`` only here."""
    team_resolver = TeamResolver(repos.team_members)
    jwt_manager = JWTManager(
        secret=settings.feedpulse_jwt_secret.get_secret_value(),
        expiry_hours=settings.feedpulse_jwt_expiry_hours,
        issuer=settings.feedpulse_jwt_issuer,
    )
    token_issuer = TokenIssuer(jwt_manager, repos.accounts, team_resolver, repos.subscriptions)
    accountant = UsageAccountant(repos.subscriptions, repos.usage)

    if dispatcher is None:
        dispatcher = _build_dispatcher(settings, accountant)

    return ServiceContainer(
        settings=settings,
        repos=repos,
        team_resolver=team_resolver,
        token_issuer=token_issuer,
        accounts=AccountService(
            repos.accounts,
            token_issuer,
            repos.account_tokens,
            password_hash_rounds=settings.password_hash_rounds,
            deactivation_grace_days=settings.deactivation_grace_days,
            notifier=account_notifier or LoggingAccountNotifier(settings.frontend_url),
            auto_verify_email=settings.auto_verify_email,
        ),
        team=TeamService(
            repos.team_members,
            repos.invitations,
            repos.accounts,
            notifier=notifier or LoggingInvitationNotifier(settings.frontend_url),
            invitation_expiry_days=settings.invitation_expiry_days,
        ),
        subscriptions=SubscriptionService(repos.subscriptions),
        quota=QuotaGate(repos.subscriptions, repos.usage),
        usage=accountant,
        dispatcher=dispatcher,
    )


async def create_container(settings: Settings) -> ServiceContainer:
    """Build the container for the configured storage backend."""
    if settings.storage_backend == "postgres":
        repos = await postgres_repositories()
    else:
        repos = memory_repositories()
    log.info(
        "container_built",
        storage=settings.storage_backend,
        usage_queue=settings.usage_queue_backend,
    )
    return build_container(settings, repos)


def _build_dispatcher(settings: Settings, accountant: UsageAccountant) -> BaseUsageDispatcher:
    if settings.usage_queue_backend == "redis":
        import redis.asyncio as aioredis

        client = aioredis.from_url(settings.redis_url.get_secret_value())
        return RedisUsageDispatcher(client)
    return InProcessUsageDispatcher(
        accountant,
        maxsize=settings.usage_queue_maxsize,
        workers=settings.usage_workers,
    )


def get_container(request: Request) -> ServiceContainer:
    """Provide the process-wide service container."""
    return request.app.state.container  # type: ignore[no-any-return]
