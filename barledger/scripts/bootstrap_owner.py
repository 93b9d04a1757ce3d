#!/usr/bin/env python3
"""
Apply SQL migrations and make sure an owner account exists.

Login screens live outside this service, so the script also issues a session token for the
owner and prints it once (only its hash is stored).
"""
import os
import secrets
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from barledger.app.security import hash_session_token

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "db" / "migrations"


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def apply_migrations(conn) -> list:
    applied = []
    for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
        with conn.transaction():
            conn.execute(path.read_text(encoding="utf-8"))
        applied.append(path.name)
    return applied


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_owner: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_OWNER_EMAIL", "owner@barledger.local").strip().lower()
    if not email:
        print("bootstrap_owner: BOOTSTRAP_OWNER_EMAIL is empty", file=sys.stderr)
        return 2
    session_days = int(os.getenv("BOOTSTRAP_SESSION_DAYS", "30") or "30")

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        if _truthy(os.getenv("BOOTSTRAP_MIGRATE", "1")):
            for name in apply_migrations(conn):
                print(f"bootstrap_owner: applied {name}", file=sys.stderr)

        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO users (email, role, is_active)
                    VALUES (%s, 'owner', true)
                    ON CONFLICT (email) DO UPDATE SET role = 'owner', is_active = true
                    RETURNING id
                    """,
                    (email,),
                )
                user_id = cur.fetchone()["id"]

                token = secrets.token_urlsafe(32)
                cur.execute(
                    """
                    INSERT INTO auth_sessions (user_id, token_hash, is_active, expires_at)
                    VALUES (%s, %s, true, %s)
                    """,
                    (user_id, hash_session_token(token), datetime.now(timezone.utc) + timedelta(days=session_days)),
                )

    print(f"owner: {email}")
    print(f"session token: {token}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
