"""
Run Refresh Sweep Script
Runs one proactive token refresh sweep against the configured database.

Usage:
    python scripts/run_refresh_sweep.py
    python scripts/run_refresh_sweep.py --lookahead 600
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path to import app modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings
from app.database.connection import async_session_factory, close_db
from app.integrations.container import build_container


async def run_sweep(lookahead_seconds: int) -> int:
    """Run one sweep and print the counts. Returns a process exit code."""
    container = build_container(settings, async_session_factory)
    container.sweeper.lookahead = timedelta(seconds=lookahead_seconds)

    try:
        result = await container.sweeper.sweep()
    finally:
        await close_db()

    print("=" * 60)
    print(f"Refreshed: {result.refreshed}")
    print(f"Failed:    {result.failed}")
    for key, error_kind in result.failures.items():
        print(f"  - {key.org_id} / {key.provider.value}: {error_kind}")
    print("=" * 60)

    return 1 if result.failed else 0


def main() -> None:
    """Main script entry point."""
    parser = argparse.ArgumentParser(description="Refresh soon-to-expire provider tokens once.")
    parser.add_argument(
        "--lookahead",
        type=int,
        default=settings.sweep_lookahead_seconds,
        help="Refresh credentials expiring within this many seconds",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    sys.exit(asyncio.run(run_sweep(args.lookahead)))


if __name__ == "__main__":
    main()
