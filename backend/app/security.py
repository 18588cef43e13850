from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_pin(pin: str) -> str:
    return _pwd_context.hash(pin)


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(pin, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def find_manager_by_pin(cur, pin: Optional[str]) -> Optional[dict]:
    """
    Return the active manager whose PIN matches, or None.

    PINs are salted bcrypt hashes, so there is no indexed lookup: every active
    manager hash is checked. Manager counts are small (a handful per site).
    """
    p = (pin or "").strip()
    if not p:
        return None
    cur.execute(
        """
        SELECT id, username, pin_hash
        FROM users
        WHERE role = 'MANAGER' AND is_active = true AND pin_hash IS NOT NULL
        ORDER BY id
        """
    )
    for row in cur.fetchall():
        if verify_pin(p, row.get("pin_hash")):
            if needs_rehash(row["pin_hash"]):
                cur.execute("UPDATE users SET pin_hash = %s WHERE id = %s", (hash_pin(p), row["id"]))
            return {"id": row["id"], "username": row.get("username")}
    return None
