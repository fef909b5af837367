#!/usr/bin/env python3
"""Admin script to add or update a planner user.

Usage:
    python scripts/add_user.py username password [--admin] [--timezone Europe/Berlin]

Ensures the DB schema exists, then creates or updates the User record with
a hashed password and the IANA timezone used for the user's daily rollover.
"""
# Make the script runnable from anywhere by adding the project root (parent
# of scripts/) to sys.path.
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import getpass


async def _create_or_update(username: str, password: str, is_admin: bool = False, timezone: str | None = None):
    # Import lazily so `-h` works without the runtime dependencies.
    from planner.db import init_db, async_session
    from planner.dates import resolve_timezone
    from planner.models import User
    from planner.auth import pwd_context
    from sqlmodel import select
    if timezone:
        # fail early on typos rather than at the next midnight
        resolve_timezone(timezone)
    await init_db()
    ph = pwd_context.hash(password)
    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.username == username))
        user = q.first()
        if user:
            user.password_hash = ph
            user.is_admin = bool(is_admin)
            if timezone:
                user.timezone = timezone
        else:
            user = User(username=username, password_hash=ph, is_admin=bool(is_admin), timezone=timezone or 'UTC')
        sess.add(user)
        try:
            await sess.commit()
        except Exception:
            await sess.rollback()
            print(f"Failed to save user {username}", file=sys.stderr)
            return None
        await sess.refresh(user)
        return user


def parse_args(argv):
    p = argparse.ArgumentParser(description="Create or update a planner user")
    p.add_argument("username", help="username to create/update")
    p.add_argument("password", nargs="?", help="password for the user (omit to prompt)")
    p.add_argument("--admin", action="store_true", help="mark user as admin")
    p.add_argument("--timezone", default=None, help="IANA timezone, e.g. Australia/Melbourne (default UTC)")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    password = args.password
    if not password:
        pw = getpass.getpass("Password: ")
        pw2 = getpass.getpass("Confirm password: ")
        if pw != pw2:
            print("Passwords do not match", file=sys.stderr)
            return 2
        if pw == "":
            print("Empty password not allowed", file=sys.stderr)
            return 2
        password = pw

    from planner.errors import ConfigurationError
    try:
        user = asyncio.run(_create_or_update(args.username, password, args.admin, args.timezone))
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 2
    if not user:
        return 2
    print(f"User '{user.username}' ({'admin' if user.is_admin else 'user'}, tz={user.timezone}) saved with id={user.id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
