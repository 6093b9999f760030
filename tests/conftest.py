"""Pytest configuration, shared fixtures and compatibility helpers.

This project includes async tests marked with ``@pytest.mark.asyncio``.
Some environments run unit tests without ``pytest-asyncio`` installed, which
would otherwise make those tests fail at collection/runtime.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from pydantic import SecretStr

from config.settings import Settings
from feedpulse.api.container import Repositories, memory_repositories
from feedpulse.core.types import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionUsage,
)

TEST_JWT_SECRET = "test-secret-do-not-use"


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins.

    If pytest-asyncio (or another async plugin) is installed, this hook may be
    bypassed by that plugin depending on hook ordering. In plugin-less
    environments, this fallback executes coroutine tests via ``asyncio.run``.
    """
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        # Keep a default loop available for sync tests that call
        # ``asyncio.get_event_loop()`` directly.
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


# ── Fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    """Dev settings with a known secret and the cheapest bcrypt cost."""
    return Settings(
        feedpulse_env="dev",
        feedpulse_jwt_secret=SecretStr(TEST_JWT_SECRET),
        password_hash_rounds=4,
        storage_backend="memory",
        usage_queue_backend="memory",
    )


@pytest.fixture()
def repos() -> Repositories:
    return memory_repositories()


@pytest.fixture()
def make_plan() -> Callable[..., SubscriptionPlan]:
    def _make_plan(code: str = "starter", **limits: Any) -> SubscriptionPlan:
        values: dict[str, Any] = {
            "max_organizations": 2,
            "max_qr_codes": 10,
            "max_feedbacks_per_month": 100,
            "max_team_members": 3,
            "has_basic_analytics": True,
        }
        values.update(limits)
        return SubscriptionPlan(code=code, name=code.title(), price=19.0, **values)

    return _make_plan


@pytest.fixture()
def add_subscription(
    repos: Repositories, make_plan: Callable[..., SubscriptionPlan]
) -> Callable[..., Subscription]:
    """Store a subscription for an account; active for the current month by default."""

    def _add(
        account_id: str,
        plan: SubscriptionPlan | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> Subscription:
        now = datetime.now(timezone.utc)
        start = period_start or now - timedelta(days=5)
        subscription = Subscription(
            account_id=account_id,
            plan=plan or make_plan(),
            status=status,
            current_period_start=start,
            current_period_end=period_end or start + timedelta(days=30),
        )
        repos.subscriptions.add(subscription)  # type: ignore[attr-defined]
        return subscription

    return _add


@pytest.fixture()
def seed_usage(repos: Repositories) -> Callable[..., Any]:
    """Coroutine factory: store current-period counters for a subscription."""

    async def _seed(subscription: Subscription, **counts: int) -> SubscriptionUsage:
        usage = SubscriptionUsage(
            subscription_id=subscription.subscription_id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            **counts,
        )
        return await repos.usage.create_for_period(usage)

    return _seed
