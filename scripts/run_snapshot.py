#!/usr/bin/env python3
"""CLI entry point for a one-off dashboard snapshot.

Usage:
    # Key from the environment, snapshot JSON to stdout
    KLAVIYO_PRIVATE_KEY=pk_... python scripts/run_snapshot.py

    # Explicit key, tighter deadline, write to file
    python scripts/run_snapshot.py --key pk_... --deadline 30 --output snapshot.json
"""
import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from kdash_core.config import DashboardSettings
from kdash_core.dashboard.service import open_service
from kdash_core.klaviyo.exceptions import KlaviyoClientError
from kdash_core.schemas.snapshot import DashboardSnapshot


logger = logging.getLogger("kdash.cli")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


async def build_snapshot(
    settings: DashboardSettings, key: str, deadline: Optional[float] = None
) -> DashboardSnapshot:
    """Build one snapshot, sharing the Redis rate limit when REDIS_URL is set."""
    async with open_service(settings) as service:
        return await service.build_snapshot(key, deadline=deadline)


async def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Build a Klaviyo dashboard snapshot")
    parser.add_argument(
        "--key",
        type=str,
        default=os.getenv("KLAVIYO_PRIVATE_KEY"),
        help="Klaviyo private API key. Defaults to $KLAVIYO_PRIVATE_KEY.",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        help="Overall build budget in seconds. Defaults to $SNAPSHOT_DEADLINE_S.",
    )
    parser.add_argument(
        "--output",
        type=str,
        help="Write snapshot JSON to this path instead of stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.key:
        parser.error("--key or KLAVIYO_PRIVATE_KEY is required")

    settings = DashboardSettings.from_env()

    try:
        snapshot = await build_snapshot(settings, args.key, args.deadline)
    except KlaviyoClientError as exc:
        logger.error("No snapshot could be built: %s (%s)", exc, type(exc).__name__)
        return 1

    payload = snapshot.model_dump_json(indent=2)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
        logger.info("Wrote snapshot to %s", args.output)
    else:
        print(payload)

    if snapshot.degraded:
        logger.warning("Degraded parts: %s", ", ".join(snapshot.degraded))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
