"""Tests for usage jobs and the in-process / Redis dispatchers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from feedpulse.api.container import Repositories
from feedpulse.core.constants import USAGE_QUEUE_KEY
from feedpulse.core.exceptions import UnknownResourceTypeError
from feedpulse.core.types import ResourceType, Subscription, UsageEventType
from feedpulse.saas.dispatch import (
    InProcessUsageDispatcher,
    RedisUsageDispatcher,
    UsageJob,
    process_usage_job,
    release_expired_invitations,
)
from feedpulse.saas.team import TeamService
from feedpulse.saas.usage import UsageAccountant


class TestUsageJob:
    def test_json_round_trip(self) -> None:
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.TEAM_MEMBER,
                       delta=-1, event_type=UsageEventType.DELETE, resource_id="tm-1",
                       metadata={"member_id": "m"})
        assert UsageJob.from_json(job.to_json()) == job

    def test_from_json_defaults(self) -> None:
        job = UsageJob.from_json(b'{"subscription_id": "s1", "resource_type": "qr_code"}')
        assert job.delta == 1
        assert job.event_type == UsageEventType.CREATE
        assert job.metadata == {}

    def test_from_json_rejects_bad_input(self) -> None:
        with pytest.raises(ValueError):
            UsageJob.from_json("{not json")
        with pytest.raises(KeyError):
            UsageJob.from_json('{"resource_type": "qr_code"}')
        with pytest.raises(UnknownResourceTypeError):
            UsageJob.from_json('{"subscription_id": "s1", "resource_type": "widget"}')

    def test_to_event(self) -> None:
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.QR_CODE,
                       resource_id="qr-9", metadata={"member_id": "m"})
        event = job.to_event()
        assert event.subscription_id == "s1"
        assert event.event_type == UsageEventType.CREATE
        assert event.resource_id == "qr-9"
        assert event.created_at is None


class TestProcessUsageJob:
    @pytest.mark.asyncio
    async def test_applies_counter_and_event(
        self, repos: Repositories, add_subscription: Callable[..., Subscription]
    ) -> None:
        sub = add_subscription("o")
        accountant = UsageAccountant(repos.subscriptions, repos.usage)
        job = UsageJob(subscription_id=sub.subscription_id,
                       resource_type=ResourceType.ORGANIZATION)

        assert await process_usage_job(accountant, job) is True
        usage = await accountant.get_current_usage(sub.subscription_id)
        assert usage.organizations_count == 1
        assert len(await accountant.list_usage_events(sub.subscription_id)) == 1

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, repos: Repositories) -> None:
        accountant = UsageAccountant(repos.subscriptions, repos.usage)
        job = UsageJob(subscription_id="missing", resource_type=ResourceType.ORGANIZATION)
        assert await process_usage_job(accountant, job) is False
        assert await accountant.list_usage_events("missing") == []


class TestInProcessUsageDispatcher:
    def test_submit_before_start_drops(self) -> None:
        dispatcher = InProcessUsageDispatcher(MagicMock())
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.FEEDBACK)
        assert dispatcher.submit(job) is False
        assert dispatcher.running is False

    @pytest.mark.asyncio
    async def test_processes_submitted_jobs(
        self, repos: Repositories, add_subscription: Callable[..., Subscription]
    ) -> None:
        sub = add_subscription("o")
        accountant = UsageAccountant(repos.subscriptions, repos.usage)
        dispatcher = InProcessUsageDispatcher(accountant, maxsize=10, workers=3)
        await dispatcher.start()
        assert dispatcher.running is True

        for _ in range(5):
            assert dispatcher.submit(
                UsageJob(subscription_id=sub.subscription_id, resource_type=ResourceType.FEEDBACK)
            )
        await dispatcher.join()

        usage = await accountant.get_current_usage(sub.subscription_id)
        assert usage.feedbacks_count == 5
        assert dispatcher.pending == 0

        await dispatcher.stop()
        assert dispatcher.running is False

    @pytest.mark.asyncio
    async def test_full_queue_drops(self) -> None:
        accountant = MagicMock()
        gate = asyncio.Event()

        async def _slow(*args: object, **kwargs: object) -> None:
            await gate.wait()

        accountant.track_usage = AsyncMock(side_effect=_slow)
        accountant.record_usage_event = AsyncMock()

        dispatcher = InProcessUsageDispatcher(accountant, maxsize=1, workers=1)
        await dispatcher.start()
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.QR_CODE)

        assert dispatcher.submit(job) is True
        await asyncio.sleep(0)  # worker takes the first job
        assert dispatcher.submit(job) is True
        assert dispatcher.submit(job) is False

        gate.set()
        await dispatcher.stop()
        assert accountant.track_usage.await_count == 2

    @pytest.mark.asyncio
    async def test_stop_drains_queue(
        self, repos: Repositories, add_subscription: Callable[..., Subscription]
    ) -> None:
        sub = add_subscription("o")
        accountant = UsageAccountant(repos.subscriptions, repos.usage)
        dispatcher = InProcessUsageDispatcher(accountant, maxsize=10, workers=1)
        await dispatcher.start()
        dispatcher.submit(UsageJob(subscription_id=sub.subscription_id,
                                   resource_type=ResourceType.LOCATION))
        await dispatcher.stop()

        usage = await accountant.get_current_usage(sub.subscription_id)
        assert usage.locations_count == 1

    @pytest.mark.asyncio
    async def test_restart_after_stop(
        self, repos: Repositories, add_subscription: Callable[..., Subscription]
    ) -> None:
        sub = add_subscription("o")
        accountant = UsageAccountant(repos.subscriptions, repos.usage)
        dispatcher = InProcessUsageDispatcher(accountant, maxsize=10, workers=2)
        await dispatcher.start()
        await dispatcher.stop()
        assert dispatcher.submit(UsageJob(subscription_id=sub.subscription_id,
                                          resource_type=ResourceType.QR_CODE)) is False

        await dispatcher.start()
        assert dispatcher.submit(UsageJob(subscription_id=sub.subscription_id,
                                          resource_type=ResourceType.QR_CODE))
        await dispatcher.stop()

        usage = await accountant.get_current_usage(sub.subscription_id)
        assert usage.qr_codes_count == 1


class TestReleaseExpiredInvitations:
    @pytest.mark.asyncio
    async def test_expired_invitation_hands_back_team_member_unit(
        self,
        repos: Repositories,
        add_subscription: Callable[..., Subscription],
        seed_usage: Callable[..., Any],
    ) -> None:
        sub = add_subscription("org")
        await seed_usage(sub, team_members_count=2)
        team = TeamService(repos.team_members, repos.invitations, repos.accounts)
        now = datetime.now(timezone.utc)
        await team.invite_member("org", "org", "a@x.io", "VIEWER", now=now - timedelta(days=10))
        await team.invite_member("org", "org", "b@x.io", "VIEWER", now=now)
        # No subscription: purged without touching any counter.
        await team.invite_member("solo", "solo", "c@x.io", "VIEWER", now=now - timedelta(days=10))
        accountant = UsageAccountant(repos.subscriptions, repos.usage)

        released = await release_expired_invitations(
            team, repos.subscriptions, accountant, now=now
        )

        assert released == 1
        usage = await accountant.get_current_usage(sub.subscription_id)
        assert usage.team_members_count == 1
        events = await accountant.list_usage_events(sub.subscription_id)
        assert events[0].event_type == UsageEventType.DELETE
        assert events[0].metadata == {"reason": "invitation_expired"}
        assert await repos.invitations.find_expired(now) == []


class TestRedisUsageDispatcher:
    @pytest.mark.asyncio
    async def test_submit_pushes_json(self) -> None:
        redis_client = AsyncMock()
        dispatcher = RedisUsageDispatcher(redis_client)
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.ORGANIZATION)

        assert dispatcher.submit(job) is True
        await dispatcher.stop()

        redis_client.lpush.assert_awaited_once()
        key, payload = redis_client.lpush.await_args.args
        assert key == USAGE_QUEUE_KEY
        assert json.loads(payload)["subscription_id"] == "s1"
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_failure_is_logged_not_raised(self) -> None:
        redis_client = AsyncMock()
        redis_client.lpush.side_effect = ConnectionError("redis down")
        dispatcher = RedisUsageDispatcher(redis_client)

        assert dispatcher.submit(
            UsageJob(subscription_id="s1", resource_type=ResourceType.ORGANIZATION)
        ) is True
        await dispatcher.stop()

    def test_submit_without_loop_drops(self) -> None:
        dispatcher = RedisUsageDispatcher(AsyncMock())
        job = UsageJob(subscription_id="s1", resource_type=ResourceType.ORGANIZATION)
        assert dispatcher.submit(job) is False
