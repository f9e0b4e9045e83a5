#!/usr/bin/env python3
"""Create the admin account or reset its password.

Usage:
    python scripts/reset_admin_password.py --username admin
    python scripts/reset_admin_password.py --username admin --email ops@example.com

The password is read from ADMIN_PASSWORD or prompted for.
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys

from shared.config import settings
from shared.db import get_async_session
from shared.errors import ValidationError
from shared.services.admin_auth import AdminAuthService


async def reset(username: str, password: str, email: str | None) -> None:
    async with get_async_session() as session:
        svc = AdminAuthService(session, bcrypt_rounds=settings.BCRYPT_ROUNDS)
        user = await svc.ensure_admin_user(username=username, password=password, email=email)
        print(f"admin user '{user.username}' is ready")


def main() -> int:
    parser = argparse.ArgumentParser(description="Create or reset the admin account")
    parser.add_argument("--username", default="admin")
    parser.add_argument("--email", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)

    password = os.environ.get("ADMIN_PASSWORD") or getpass.getpass("New admin password: ")
    try:
        asyncio.run(reset(args.username, password, args.email))
    except ValidationError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
