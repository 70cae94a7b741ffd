#!/usr/bin/env python3
"""Create a login account with an argon2id password hash.

    python scripts/bootstrap_user.py --email ops@example.com --password 'Correct-Horse-9'
    USER_EMAIL=ops@example.com USER_PASSWORD=... python scripts/bootstrap_user.py --max-sessions 3

Without DATABASE_URL the account lands in the in-memory store, which is only
useful for checking the command line.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 12


def password_problem(email: str, password: str) -> str | None:
    """Return why ``password`` is unacceptable, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    local_part = email.partition("@")[0].lower()
    if local_part and local_part in password.lower():
        return "password must not contain the email name"
    if len(set(password)) < 5:
        return "password uses too few distinct characters"
    return None


async def create_account(
    email: str, password: str, *, max_sessions: int | None, dry_run: bool
) -> tuple[str, str | None]:
    """Returns ``(status, user_id)`` with status created, exists or dry_run."""
    from authkernel.service.runtime import Runtime
    from authkernel.storage.common import normalize_email

    runtime = Runtime()
    try:
        existing = runtime.store.get_user_by_email(normalize_email(email))
        if existing:
            return "exists", existing.id
        if dry_run:
            return "dry_run", None
        user = runtime.store.create_user(
            email,
            await runtime.hasher.hash(password),
            max_sessions=max_sessions or runtime.settings.default_max_sessions,
        )
        return "created", user.id
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create an AuthKernel login account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument(
        "--max-sessions",
        type=int,
        default=None,
        help="concurrent session cap (defaults to DEFAULT_MAX_SESSIONS)",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or USER_EMAIL / USER_PASSWORD) are required")
    problem = password_problem(args.email, args.password)
    if problem:
        parser.error(problem)
    if args.max_sessions is not None and args.max_sessions < 1:
        parser.error("--max-sessions must be positive")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("note: DATABASE_URL is unset, using the in-memory store")

    try:
        status, user_id = asyncio.run(
            create_account(
                args.email,
                args.password,
                max_sessions=args.max_sessions,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)

    if status == "exists":
        print(f"{args.email} already exists ({user_id})")
    elif status == "dry_run":
        print(f"would create {args.email}")
    else:
        print(f"created {args.email} ({user_id})")


if __name__ == "__main__":
    main()
