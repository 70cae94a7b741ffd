#!/usr/bin/env python3
"""Clear the failed-login counter and lockout window of an account.

Usage:
    python scripts/unlock_account.py --email someone@example.com
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def unlock(email: str) -> bool:
    from authkernel.service.runtime import Runtime

    runtime = Runtime()
    try:
        return runtime.auth.unlock_account(email)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(description="Unlock a locked-out account")
    parser.add_argument("--email", required=True, help="Email of the account to unlock")
    args = parser.parse_args()

    try:
        unlocked = asyncio.run(unlock(args.email))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not unlocked:
        print(f"No account found for {args.email}")
        sys.exit(1)
    print(f"Account {args.email} unlocked")


if __name__ == "__main__":
    main()
