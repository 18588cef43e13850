import os
from typing import Optional

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationError, NotFound, OtpRejected
from .logs import json_log

OTP_DIGITS = 6
MAX_ATTEMPTS = 5


def _fernet() -> Fernet:
    """
    OTP secrets are stored encrypted; the key stays out of the DB. Provide it via env:
      APP_OTP_FERNET_KEY = <base64 urlsafe 32-byte key>

    Generate one with:
      python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    """
    key = (os.environ.get("APP_OTP_FERNET_KEY") or "").strip()
    if not key:
        raise ConfigurationError("customer OTP is not configured on the server (missing APP_OTP_FERNET_KEY).")
    try:
        return Fernet(key.encode("utf-8"))
    except Exception:
        raise ConfigurationError("invalid APP_OTP_FERNET_KEY") from None


def encrypt_secret(secret: str) -> str:
    f = _fernet()
    token = f.encrypt(secret.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: str) -> str:
    f = _fernet()
    try:
        raw = f.decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ConfigurationError("failed to decrypt OTP secret") from None
    return raw.decode("utf-8")


def new_otp() -> tuple[str, str]:
    """Fresh (secret, code). Each OTP gets its own secret; the code is HOTP counter 0."""
    secret = pyotp.random_base32(length=32)
    return secret, pyotp.HOTP(secret, digits=OTP_DIGITS).at(0)


def check_code(secret: str, code: Optional[str]) -> bool:
    c = (code or "").strip().replace(" ", "")
    if not c.isdigit() or len(c) != OTP_DIGITS:
        return False
    return bool(pyotp.HOTP(secret, digits=OTP_DIGITS).verify(c, 0))


def issue_otp(cur, bill_no: str, phone: str, expiry_minutes: int) -> dict:
    """
    Replace any pending OTP for the bill with a new one.

    The code is returned to the caller; getting it to the customer (SMS etc.)
    happens outside this service.
    """
    cur.execute("SELECT bill_no FROM bill WHERE bill_no = %s", (bill_no,))
    if not cur.fetchone():
        raise NotFound(f"bill {bill_no} not found")
    secret, code = new_otp()
    cur.execute("DELETE FROM customer_otp WHERE bill_no = %s AND consumed_at IS NULL", (bill_no,))
    cur.execute(
        """
        INSERT INTO customer_otp (bill_no, phone, secret_enc, expires_at)
        VALUES (%s, %s, %s, now() + make_interval(mins => %s))
        RETURNING id, bill_no, phone, expires_at
        """,
        (bill_no, phone, encrypt_secret(secret), int(expiry_minutes)),
    )
    row = cur.fetchone()
    json_log("info", "otp.issued", bill_no=bill_no, otp_id=row["id"], expires_at=row["expires_at"])
    return {**row, "code": code}


def verify_otp(cur, bill_no: str, code: str) -> dict:
    cur.execute(
        """
        SELECT id, secret_enc, verified_at, attempts, expires_at <= now() AS expired
        FROM customer_otp
        WHERE bill_no = %s AND consumed_at IS NULL
        ORDER BY created_at DESC
        LIMIT 1
        FOR UPDATE
        """,
        (bill_no,),
    )
    row = cur.fetchone()
    if not row:
        raise OtpRejected(f"no OTP pending for bill {bill_no}", reason="OTP_NOT_FOUND")
    if row.get("verified_at"):
        raise OtpRejected("OTP already used", reason="OTP_USED")
    if row.get("expired"):
        raise OtpRejected("OTP expired", reason="OTP_EXPIRED")
    if int(row.get("attempts") or 0) >= MAX_ATTEMPTS:
        raise OtpRejected("too many OTP attempts; issue a new code", reason="OTP_LOCKED")

    if not check_code(decrypt_secret(row["secret_enc"]), code):
        cur.execute("UPDATE customer_otp SET attempts = attempts + 1 WHERE id = %s", (row["id"],))
        raise OtpRejected("invalid OTP", reason="OTP_INVALID")

    cur.execute(
        "UPDATE customer_otp SET verified_at = now() WHERE id = %s RETURNING id, bill_no, verified_at",
        (row["id"],),
    )
    return cur.fetchone()
