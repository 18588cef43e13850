#!/usr/bin/env python3
"""
Create a staff user (cashier, dispatcher, security, manager, admin) with a PIN.

Env driven so it can run from a container entrypoint:

  BOOTSTRAP_USER=1
  BOOTSTRAP_USER_NAME=manager1
  BOOTSTRAP_USER_ROLE=MANAGER
  BOOTSTRAP_USER_PIN=4821          # generated and printed when unset

Idempotent by username: an existing user is left untouched.
"""
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row
from pydantic import TypeAdapter, ValidationError

from backend.app.security import hash_pin
from backend.app.validation import UserRole


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_pin() -> str:
    # Six digits, typed on a keypad.
    return f"{secrets.randbelow(10**6):06d}"


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_USER", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_user: missing DATABASE_URL", file=sys.stderr)
        return 2

    username = os.getenv("BOOTSTRAP_USER_NAME", "manager").strip().lower()
    if not username:
        print("bootstrap_user: BOOTSTRAP_USER_NAME is empty", file=sys.stderr)
        return 2

    try:
        role = TypeAdapter(UserRole).validate_python(os.getenv("BOOTSTRAP_USER_ROLE", "MANAGER"))
    except ValidationError:
        print("bootstrap_user: BOOTSTRAP_USER_ROLE must be one of CASHIER, DISPATCHER, SECURITY, MANAGER, ADMIN", file=sys.stderr)
        return 2

    pin = (os.getenv("BOOTSTRAP_USER_PIN") or "").strip()
    generated_pin = False
    if not pin:
        pin = _generate_pin()
        generated_pin = True
    if not pin.isdigit() or not (4 <= len(pin) <= 12):
        print("bootstrap_user: BOOTSTRAP_USER_PIN must be 4-12 digits", file=sys.stderr)
        return 2

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE username = %s", (username,))
                if cur.fetchone():
                    return 0
                cur.execute(
                    """
                    INSERT INTO users (username, full_name, role, pin_hash, is_active)
                    VALUES (%s, %s, %s, %s, true)
                    RETURNING id
                    """,
                    (username, os.getenv("BOOTSTRAP_USER_FULL_NAME") or None, role, hash_pin(pin)),
                )
                user_id = cur.fetchone()["id"]

    print("BOOTSTRAP_USER_CREATED")
    print(f"id: {user_id}")
    print(f"username: {username}")
    print(f"role: {role}")
    if generated_pin:
        print(f"pin: {pin}")
    else:
        print("pin: (provided via BOOTSTRAP_USER_PIN)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
