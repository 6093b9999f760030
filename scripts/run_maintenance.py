#!/usr/bin/env python3
"""Periodic maintenance: roll usage periods, expire invitations, finish deactivations.

Intended to run from cron (daily is enough; every step is idempotent):

    python scripts/run_maintenance.py
    python scripts/run_maintenance.py --skip-deactivations
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from feedpulse.api.container import create_container
from feedpulse.core.logging import get_logger, setup_logging
from feedpulse.data.db import close_engine
from feedpulse.saas.dispatch import release_expired_invitations

log = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="FeedPulse maintenance jobs")
    parser.add_argument("--skip-usage", action="store_true",
                        help="do not initialize current-period usage rows")
    parser.add_argument("--skip-invitations", action="store_true",
                        help="do not purge expired team invitations")
    parser.add_argument("--skip-deactivations", action="store_true",
                        help="do not finalize pending account deactivations")
    return parser.parse_args()


async def main(args: argparse.Namespace) -> None:
    setup_logging()
    settings = get_settings()
    container = await create_container(settings)

    try:
        if not args.skip_usage:
            created = await container.usage.reset_monthly_usage()
            log.info("maintenance_usage_periods", created=created)
        if not args.skip_invitations:
            released = await release_expired_invitations(
                container.team, container.repos.subscriptions, container.usage
            )
            log.info("maintenance_expired_invitations", released=released)
        if not args.skip_deactivations:
            deactivated = await container.accounts.process_pending_deactivations()
            log.info("maintenance_deactivations", deactivated=deactivated)
    finally:
        if settings.storage_backend == "postgres":
            await close_engine()


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
