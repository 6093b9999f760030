"""Usage dispatch — hands post-success usage updates to background consumers.

Callers only ever enqueue. Processing happens on worker tasks (in-process) or
in a separate worker process fed through Redis (``feedpulse.api.worker``).
A job that cannot be queued or processed is logged and dropped; it is never
retried and never surfaces to the request that produced it.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any

from feedpulse.core.constants import (
    DEFAULT_USAGE_QUEUE_MAXSIZE,
    DEFAULT_USAGE_WORKERS,
    USAGE_QUEUE_KEY,
)
from feedpulse.core.interfaces import BaseSubscriptionRepository, BaseUsageDispatcher
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    ResourceType,
    UsageEvent,
    UsageEventType,
    parse_resource_type,
)
from feedpulse.saas.team import TeamService
from feedpulse.saas.usage import UsageAccountant

log = get_logger(__name__)


@dataclass
class UsageJob:
    """One unit of deferred accounting: a counter delta plus its audit event."""

    subscription_id: str
    resource_type: ResourceType
    delta: int = 1
    event_type: UsageEventType = UsageEventType.CREATE
    resource_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "subscription_id": self.subscription_id,
                "resource_type": self.resource_type.value,
                "delta": self.delta,
                "event_type": self.event_type.value,
                "resource_id": self.resource_id,
                "metadata": self.metadata,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> UsageJob:
        """Parse a queued job. Raises ValueError/KeyError on malformed input."""
        data: dict[str, Any] = json.loads(raw)
        return cls(
            subscription_id=str(data["subscription_id"]),
            resource_type=parse_resource_type(data["resource_type"]),
            delta=int(data.get("delta", 1)),
            event_type=UsageEventType(data.get("event_type", UsageEventType.CREATE.value)),
            resource_id=data.get("resource_id"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_event(self) -> UsageEvent:
        return UsageEvent(
            subscription_id=self.subscription_id,
            event_type=self.event_type,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            metadata=dict(self.metadata),
        )


async def process_usage_job(accountant: UsageAccountant, job: UsageJob) -> bool:
    """Apply one job. Failures are logged and swallowed; returns success."""
    try:
        await accountant.track_usage(job.subscription_id, job.resource_type, job.delta)
        await accountant.record_usage_event(job.to_event())
    except Exception as exc:
        log.error(
            "usage_tracking_failed",
            subscription_id=job.subscription_id,
            resource_type=job.resource_type.value,
            delta=job.delta,
            error=str(exc),
        )
        return False
    return True


async def release_expired_invitations(
    team: TeamService,
    subscriptions: BaseSubscriptionRepository,
    accountant: UsageAccountant,
    now: datetime | None = None,
) -> int:
    """Purge expired invitations and hand back the team-member unit each one held."""
    released = 0
    for invitation in await team.purge_expired_invitations(now):
        subscription = await subscriptions.find_by_account_id(invitation.owner_id)
        if subscription is None:
            continue
        job = UsageJob(
            subscription_id=subscription.subscription_id,
            resource_type=ResourceType.TEAM_MEMBER,
            delta=-1,
            event_type=UsageEventType.DELETE,
            resource_id=invitation.invitation_id,
            metadata={"reason": "invitation_expired"},
        )
        if await process_usage_job(accountant, job):
            released += 1
    return released


class InProcessUsageDispatcher(BaseUsageDispatcher):
    """Bounded asyncio queue drained by a fixed pool of worker tasks."""

    def __init__(
        self,
        accountant: UsageAccountant,
        maxsize: int = DEFAULT_USAGE_QUEUE_MAXSIZE,
        workers: int = DEFAULT_USAGE_WORKERS,
    ) -> None:
        self._accountant = accountant
        self._maxsize = maxsize
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[UsageJob] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def submit(self, job: UsageJob) -> bool:
        if self._queue is None:
            log.warning("usage_job_dropped", reason="dispatcher_not_started",
                        subscription_id=job.subscription_id)
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            log.warning("usage_job_dropped", reason="queue_full",
                        subscription_id=job.subscription_id, maxsize=self._maxsize)
            return False
        return True

    async def start(self) -> None:
        if self._tasks:
            return
        # Bound to the running loop.
        queue: asyncio.Queue[UsageJob] = asyncio.Queue(maxsize=self._maxsize)
        self._queue = queue
        self._tasks = [
            asyncio.create_task(self._worker(queue), name=f"usage-worker-{i}")
            for i in range(self._worker_count)
        ]
        log.info("usage_dispatcher_started", workers=self._worker_count, maxsize=self._maxsize)

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None and self._tasks:
            await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue, then cancel the workers."""
        if not self._tasks:
            return
        await self.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        log.info("usage_dispatcher_stopped")

    async def _worker(self, queue: asyncio.Queue[UsageJob]) -> None:
        while True:
            job = await queue.get()
            try:
                await process_usage_job(self._accountant, job)
            finally:
                queue.task_done()


class RedisUsageDispatcher(BaseUsageDispatcher):
    """Pushes jobs onto a Redis list consumed by ``feedpulse.api.worker``."""

    def __init__(self, redis_client: Any, queue_key: str = USAGE_QUEUE_KEY) -> None:
        self._redis = redis_client
        self._queue_key = queue_key
        self._pending: set[asyncio.Task[None]] = set()

    def submit(self, job: UsageJob) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("usage_job_dropped", reason="no_event_loop",
                        subscription_id=job.subscription_id)
            return False

        task = loop.create_task(self._push(job.to_json(), job.subscription_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def stop(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._redis.aclose()
        log.info("usage_dispatcher_stopped", queue=self._queue_key)

    async def _push(self, payload: str, subscription_id: str) -> None:
        try:
            await self._redis.lpush(self._queue_key, payload)
        except Exception as exc:
            log.error("usage_job_enqueue_failed", subscription_id=subscription_id,
                      queue=self._queue_key, error=str(exc))
