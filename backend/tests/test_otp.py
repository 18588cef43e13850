import pyotp
import pytest
from cryptography.fernet import Fernet

from backend.app import otp as otp_mod
from backend.app.errors import ConfigurationError, NotFound, OtpRejected


@pytest.fixture
def fernet_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("APP_OTP_FERNET_KEY", key)
    return key


def test_secret_encryption_roundtrip(fernet_key):
    token = otp_mod.encrypt_secret("JBSWY3DPEHPK3PXP")
    assert token != "JBSWY3DPEHPK3PXP"
    assert otp_mod.decrypt_secret(token) == "JBSWY3DPEHPK3PXP"


def test_missing_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("APP_OTP_FERNET_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        otp_mod.encrypt_secret("x")


def test_new_otp_code_checks_against_its_secret():
    secret, code = otp_mod.new_otp()
    assert len(code) == 6 and code.isdigit()
    assert otp_mod.check_code(secret, code) is True
    assert otp_mod.check_code(secret, f" {code[:3]} {code[3:]} ") is True
    assert otp_mod.check_code(secret, "12345") is False
    assert otp_mod.check_code(secret, None) is False


class _OtpCursor:
    def __init__(self, bill_exists=True, pending=None):
        self.bill_exists = bill_exists
        self.pending = pending
        self.row = None
        self.executed = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, params))
        if text.startswith("select bill_no from bill"):
            self.row = {"bill_no": params[0]} if self.bill_exists else None
            return
        if text.startswith("delete from customer_otp"):
            return
        if text.startswith("insert into customer_otp"):
            self.inserted = params
            self.row = {"id": "otp-1", "bill_no": params[0], "phone": params[1], "expires_at": "later"}
            return
        if text.startswith("select id, secret_enc, verified_at, attempts"):
            self.row = self.pending
            return
        if text.startswith("update customer_otp set attempts"):
            self.row = None
            return
        if text.startswith("update customer_otp set verified_at"):
            self.row = {"id": params[0], "bill_no": "S-1", "verified_at": "now"}
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.row

    def ran(self, prefix):
        return [p for t, p in self.executed if t.startswith(prefix)]


def test_issue_otp_replaces_pending_and_stores_encrypted_secret(fernet_key):
    cur = _OtpCursor()
    out = otp_mod.issue_otp(cur, "S-1", "9876543210", 10)
    assert len(out["code"]) == 6
    assert len(cur.ran("delete from customer_otp")) == 1
    bill_no, phone, secret_enc, minutes = cur.inserted
    assert (bill_no, phone, minutes) == ("S-1", "9876543210", 10)
    secret = otp_mod.decrypt_secret(secret_enc)
    assert pyotp.HOTP(secret, digits=6).at(0) == out["code"]


def test_issue_otp_unknown_bill(fernet_key):
    with pytest.raises(NotFound):
        otp_mod.issue_otp(_OtpCursor(bill_exists=False), "S-404", "9876543210", 10)


def _pending(secret, **overrides):
    row = {
        "id": "otp-1",
        "secret_enc": otp_mod.encrypt_secret(secret),
        "verified_at": None,
        "attempts": 0,
        "expired": False,
    }
    row.update(overrides)
    return row


def test_verify_otp_accepts_the_issued_code(fernet_key):
    secret, code = otp_mod.new_otp()
    cur = _OtpCursor(pending=_pending(secret))
    out = otp_mod.verify_otp(cur, "S-1", code)
    assert out["verified_at"] == "now"


def test_verify_otp_wrong_code_counts_an_attempt(fernet_key):
    secret, code = otp_mod.new_otp()
    wrong = "000000" if code != "000000" else "111111"
    cur = _OtpCursor(pending=_pending(secret))
    with pytest.raises(OtpRejected) as ex:
        otp_mod.verify_otp(cur, "S-1", wrong)
    assert ex.value.reason == "OTP_INVALID"
    assert cur.ran("update customer_otp set attempts") == [("otp-1",)]


@pytest.mark.parametrize(
    "overrides,reason",
    [
        ({"verified_at": "earlier"}, "OTP_USED"),
        ({"expired": True}, "OTP_EXPIRED"),
        ({"attempts": 5}, "OTP_LOCKED"),
    ],
)
def test_verify_otp_rejections(fernet_key, overrides, reason):
    secret, code = otp_mod.new_otp()
    cur = _OtpCursor(pending=_pending(secret, **overrides))
    with pytest.raises(OtpRejected) as ex:
        otp_mod.verify_otp(cur, "S-1", code)
    assert ex.value.reason == reason


def test_verify_otp_without_pending_code(fernet_key):
    with pytest.raises(OtpRejected) as ex:
        otp_mod.verify_otp(_OtpCursor(pending=None), "S-1", "123456")
    assert ex.value.reason == "OTP_NOT_FOUND"
