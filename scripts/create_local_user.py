#!/usr/bin/env python3
"""Create a local email/password account in the gateway's credential store.

Usage:
    python scripts/create_local_user.py --email admin@example.com --name Admin
    AUTHGATE_NEW_USER_PASSWORD=... python scripts/create_local_user.py --email admin@example.com

The password is read from ``AUTHGATE_NEW_USER_PASSWORD`` or prompted for, so it
never lands in shell history.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authgate.auth.errors import AccountExists  # noqa: E402
from authgate.auth.local import LocalAuthenticator  # noqa: E402
from authgate.db import Database  # noqa: E402
from authgate.logging_config import configure_logging  # noqa: E402

LOGGER = logging.getLogger("authgate.scripts.create_local_user")

MIN_PASSWORD_LENGTH = 8


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a local Auth Gateway account.")
    parser.add_argument("--email", required=True, help="Login email for the new account")
    parser.add_argument("--name", default=None, help="Display name (defaults to the email)")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL; defaults to AUTHGATE_DB_URL or the local SQLite file",
    )
    return parser.parse_args(argv)


def _read_password() -> str:
    password = os.getenv("AUTHGATE_NEW_USER_PASSWORD")
    if password:
        return password
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("Passwords do not match")
    return first


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    password = _read_password()
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", file=sys.stderr)
        return 2

    database = Database(args.database_url)
    database.init_schema()
    try:
        user = LocalAuthenticator(database).register(email=args.email, password=password, name=args.name)
    except AccountExists:
        print(f"An account for {args.email} already exists", file=sys.stderr)
        return 1
    finally:
        database.dispose()

    LOGGER.info("Created local account %s", user.id)
    print(f"Created local account {user.email} (uid {user.public_id})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
