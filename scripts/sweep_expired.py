#!/usr/bin/env python3
"""Run one expiry sweep over the revocation ledger and the ephemeral store.

Useful from cron when the API process runs without its in-process scheduler,
or to trim the tables by hand after an outage.

Usage:
    DATABASE_URL=postgresql://... REDIS_URL=redis://... python scripts/sweep_expired.py
    python scripts/sweep_expired.py --repeat 3 --interval 60

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis connection string (optional)
    JWT_SECRET / JWT_REFRESH_SECRET: needed so the runtime can start
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(repeat: int, interval: float) -> list[dict]:
    # Import here to avoid loading config before argument parsing
    from civicauth.service.runtime import get_runtime

    runtime = get_runtime()
    results = []
    try:
        for index in range(repeat):
            if index:
                await asyncio.sleep(interval)
            results.append(await runtime.cleanup.run_once())
    finally:
        await runtime.close()
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Delete expired deny-list entries, refresh tokens and ephemeral records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--repeat", type=int, default=1, help="Number of sweeps to run")
    parser.add_argument(
        "--interval", type=float, default=60.0, help="Seconds between sweeps when repeating"
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    from civicauth.logging import configure_logging

    configure_logging("DEBUG" if args.verbose else None, development_mode=sys.stderr.isatty())

    if args.repeat < 1:
        print("Error: --repeat must be at least 1")
        sys.exit(1)

    try:
        results = asyncio.run(sweep(args.repeat, args.interval))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    failed = False
    for number, result in enumerate(results, start=1):
        if "error" in result:
            failed = True
            print(f"Sweep {number}: failed ({result['error']})")
        else:
            print(
                f"Sweep {number}: removed {result['revocation']} revocation rows, "
                f"{result['ephemeral']} ephemeral records"
            )
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
