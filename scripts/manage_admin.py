#!/usr/bin/env python3
"""Administrator bootstrap and recovery for the portal gate.

Usage:
    python scripts/manage_admin.py init-db
    python scripts/manage_admin.py create --username admin --email admin@mesrit.ne
    python scripts/manage_admin.py reset --username admin

``create`` refuses to run once any user exists; later accounts are created
through the admin API. ``reset`` prints a new temporary password, reactivates
the account and removes its two-factor enrollment, for an administrator who
lost both their password and their authenticator.

The database is taken from DATABASE_URL (or ``--database-url``).
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage portal gate administrators")
    parser.add_argument(
        "--database-url",
        help="Database URL (default: from DATABASE_URL env var)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and indexes")

    create = sub.add_parser("create", help="Create the first super-admin")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        help="Initial password (default: generate one and print it)",
    )

    reset = sub.add_parser("reset", help="Reset an administrator's password and 2FA")
    reset.add_argument("--username", required=True)

    return parser.parse_args(argv)


async def _init_db() -> int:
    from app.core import init_db

    await init_db()
    print("Database tables created.")
    return 0


async def _create(username: str, email: str, password: str | None) -> int:
    from app.core import async_session_maker
    from app.core.exceptions import ValidationError
    from app.services.auth import AuthService, generate_password
    from app.services.rbac import Role

    async with async_session_maker() as db:
        service = AuthService(db)
        if await service.user_count() > 0:
            print("ERROR: Users already exist. Create further accounts through the admin API.")
            return 1

        initial = password or generate_password()
        try:
            await service.create_user(
                username=username,
                email=email,
                password=initial,
                role=Role.SUPER_ADMIN,
                is_first_login=True,
            )
        except ValidationError as e:
            print(f"ERROR: {e.message}")
            return 1
        await db.commit()

    print(f"Created super-admin '{username}'.")
    if password is None:
        print(f"Temporary password: {initial}")
    print("The password must be changed at first login.")
    return 0


async def _reset(username: str) -> int:
    from app.core import async_session_maker
    from app.models.user import UserStatus
    from app.services.auth import AuthService
    from app.services.two_factor import TwoFactorService

    async with async_session_maker() as db:
        service = AuthService(db)
        user = await service.get_user_by_username(username)
        if user is None:
            print(f"ERROR: No user named '{username}'.")
            return 1

        password = await service.reset_password(user)
        await service.set_status(user, UserStatus.ACTIVE)
        await TwoFactorService(db).clear(user)
        await db.commit()

    print(f"Reset '{username}': account active, two-factor removed.")
    print(f"Temporary password: {password}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    from app.core import engine

    try:
        if args.command == "init-db":
            return await _init_db()
        if args.command == "create":
            return await _create(args.username, args.email, args.password)
        return await _reset(args.username)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    # Settings are read on first import of app.core
    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
