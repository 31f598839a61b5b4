#!/usr/bin/env python3
"""Sweep expired refresh tokens.

Usage:
    # One sweep, then exit (cron-style):
    python scripts/cleanup_tokens.py --once

    # Long-lived scheduler, stopped with Ctrl+C:
    python scripts/cleanup_tokens.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
    JWT_SECRET: Signing secret; required unless TEST_MODE is on
    CLEANUP_INTERVAL_HOURS: Period between sweeps (default 24)
    CLEANUP_RETRY_MINUTES: Delay before retrying a failed sweep (default 30)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_once() -> int:
    """Run a single sweep. Returns the process exit code."""
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        removed = await runtime.tokens.cleanup()
    finally:
        await runtime.close()
    if removed is None:
        print("Error: cleanup failed, see logs for details")
        return 1
    print(f"Removed {removed} expired refresh token(s)")
    return 0


async def run_forever() -> int:
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.cleanup.start()
    try:
        # The scheduler never exits by itself
        await asyncio.Event().wait()
    finally:
        await runtime.close()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Remove expired refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit instead of scheduling",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL to sweep PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        exit_code = asyncio.run(run_once() if args.once else run_forever())
    except KeyboardInterrupt:
        print("\nStopped.")
        exit_code = 0
    except Exception as e:
        print(f"Error: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
