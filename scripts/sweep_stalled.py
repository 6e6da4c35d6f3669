#!/usr/bin/env python3
"""
Resolve stalled job items once and exit.

For deployments that run the sweep from cron instead of the in-process
sweeper thread. Reads the same STRIPFORGE_* / REPLICATE_* environment as
the API.

    python scripts/sweep_stalled.py --timeout 600
"""

import logging
import sys

from stripforge.config import Settings
from stripforge.jobs.factory import build_orchestrator
from stripforge.jobs.sweeper import StallSweeper

logger = logging.getLogger("sweep_stalled")


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Fail or poll job items whose webhooks never arrived")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds after dispatch before an item counts as stalled (default: STRIPFORGE_ITEM_TIMEOUT)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = Settings.from_env()
    timeout = args.timeout if args.timeout is not None else settings.item_timeout
    sweeper = StallSweeper(build_orchestrator(settings), timeout_seconds=timeout)

    resolved = sweeper.run_once()
    logger.info(f"Resolved {resolved} stalled items (timeout={timeout}s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
