#!/usr/bin/env python3
"""Delete audit log entries older than the retention window.

Usage:
    python scripts/prune_audit_log.py            # uses AUDIT_LOG_RETENTION_DAYS
    python scripts/prune_audit_log.py --days 30
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def prune(days: int | None) -> int:
    from authkernel.service.runtime import Runtime

    runtime = Runtime()
    try:
        return runtime.audit.prune(days or runtime.settings.audit_log_retention_days)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(description="Prune old audit log entries")
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (defaults to AUDIT_LOG_RETENTION_DAYS)",
    )
    args = parser.parse_args()

    if args.days is not None and args.days < 1:
        print("Error: --days must be positive")
        sys.exit(1)

    try:
        removed = asyncio.run(prune(args.days))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Removed {removed} audit log entries")


if __name__ == "__main__":
    main()
