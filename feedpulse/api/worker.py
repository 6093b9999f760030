"""Usage worker — polls the Redis usage queue and applies usage jobs.

Usage:
    python -m feedpulse.api.worker

Continuously polls the Redis 'feedpulse:usage_queue' list (BRPOP) and
applies each job through the UsageAccountant. Pairs with
``usage_queue_backend="redis"`` on the API side.
"""

from __future__ import annotations

import asyncio

from config.settings import Settings, get_settings
from feedpulse.api.container import create_container
from feedpulse.core.constants import USAGE_QUEUE_KEY, USAGE_QUEUE_POLL_TIMEOUT
from feedpulse.core.exceptions import UnknownResourceTypeError
from feedpulse.core.logging import get_logger, setup_logging
from feedpulse.data.db import close_engine
from feedpulse.saas.dispatch import UsageJob, process_usage_job
from feedpulse.saas.usage import UsageAccountant

log = get_logger(__name__)


async def handle_raw_job(accountant: UsageAccountant, raw_job: bytes | str) -> bool:
    """Decode and apply one queued job. Malformed payloads are logged and dropped."""
    try:
        job = UsageJob.from_json(raw_job)
    except (ValueError, KeyError, TypeError, UnknownResourceTypeError) as exc:
        log.warning("invalid_job", raw=str(raw_job), error=str(exc))
        return False
    return await process_usage_job(accountant, job)


async def worker_loop(settings: Settings | None = None) -> None:
    """Main worker loop — poll Redis and process jobs."""
    import redis.asyncio as aioredis

    settings = settings or get_settings()
    container = await create_container(settings)
    redis_client = aioredis.from_url(settings.redis_url.get_secret_value())

    log.info("worker_started", queue=USAGE_QUEUE_KEY)

    try:
        while True:
            # BRPOP blocks for USAGE_QUEUE_POLL_TIMEOUT seconds
            result = await redis_client.brpop(USAGE_QUEUE_KEY, timeout=USAGE_QUEUE_POLL_TIMEOUT)
            if result is None:
                continue  # timeout, poll again

            _, raw_job = result
            await handle_raw_job(container.usage, raw_job)

    except asyncio.CancelledError:
        log.info("worker_cancelled")
    finally:
        await redis_client.aclose()
        if settings.storage_backend == "postgres":
            await close_engine()
        log.info("worker_stopped")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(worker_loop())
