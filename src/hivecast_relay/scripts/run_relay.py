#!/usr/bin/env python3
"""Run one relay pass from cron.

Typical usage (every minute):
  python -m hivecast_relay.scripts.run_relay --mode continuous
  python -m hivecast_relay.scripts.run_relay --mode scheduled

Exit code:
  0 = run completed (per-user errors are reported in the JSON summary)
  1 = configuration error, nothing was processed
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from hivecast_relay.core.settings import settings
from hivecast_relay.db.session import SessionLocal, create_tables
from hivecast_relay.services.content_cache import ContentCache
from hivecast_relay.services.ledger import HiveClient
from hivecast_relay.services.relay import RunSummary, create_relay
from hivecast_relay.services.token_store import TokenStoreConfigError, create_token_store

logger = logging.getLogger("hivecast_relay.run_relay")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay Hive notifications to Farcaster once")
    parser.add_argument(
        "--mode",
        choices=("continuous", "scheduled"),
        default="continuous",
        help="continuous: every linked user; scheduled: users whose delivery time is now",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running (development databases only).",
    )
    return parser


async def run_once(mode: str) -> RunSummary:
    token_store = create_token_store(settings)
    hive = HiveClient()
    relay = create_relay(
        mode,
        session_factory=SessionLocal,
        token_store=token_store,
        hive=hive,
        cache=ContentCache(),
    )
    try:
        return await relay.run()
    finally:
        await relay.sender.close()
        await hive.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.create_tables:
        create_tables()

    try:
        summary = asyncio.run(run_once(args.mode))
    except TokenStoreConfigError as exc:
        logger.error("%s", exc)
        return 1

    print(json.dumps(summary.as_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
