"""
Raw Tally vouchers -> canonical bill/receipt rows.

Everything here is pure: no I/O, no clock except the `today` argument. The
narration heuristics are plain data (`PAYMENT_MODE_RULES`, `BILL_TAG_PATTERN`,
`BILL_REFERENCE_PATTERN`) so they can be tuned without touching the pipeline.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence, Tuple

from .errors import MalformedRecord


@dataclass(frozen=True)
class RawVoucher:
    voucher_number: Any
    date: Any
    party_name: Any
    amount: Any
    narration: Any = None
    reference: Any = None
    voucher_type: Any = None


# Ordered: first rule with a matching keyword wins, CASH otherwise.
PAYMENT_MODE_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("CHEQUE", ("cheque", "chq")),
    ("DIGITAL", ("upi", "digital", "neft")),
)
DEFAULT_PAYMENT_MODE = "CASH"

# Explicit tag: whatever token follows "BILL:".
BILL_TAG_PATTERN = re.compile(r"\bbill:\s*([A-Z0-9][A-Z0-9/-]*)", re.IGNORECASE)

# Loose forms: "bill INV-1042", "Bill No. 1042". The token must carry a digit
# so ordinary words after "bill" ("bill paid in full") are not taken as references.
BILL_REFERENCE_PATTERN = re.compile(
    r"\bbill\b[\s:#]*(?:no\b\.?|number\b)?[\s:#.]*((?=[A-Z0-9/-]*\d)[A-Z0-9][A-Z0-9/-]*)",
    re.IGNORECASE,
)

_AMOUNT_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y", "%d-%b-%Y", "%d-%b-%y")


def _text(v) -> str:
    if v is None:
        return ""
    return str(v).strip()


def classify_payment_mode(narration: Optional[str], rules: Sequence = PAYMENT_MODE_RULES) -> str:
    text = _text(narration).lower()
    if not text:
        return DEFAULT_PAYMENT_MODE
    for mode, keywords in rules:
        if any(k in text for k in keywords):
            return mode
    return DEFAULT_PAYMENT_MODE


def extract_bill_reference(*texts: Optional[str]) -> Optional[str]:
    """First bill reference found in the given texts, in order."""
    for t in texts:
        text = _text(t)
        m = BILL_TAG_PATTERN.search(text) or BILL_REFERENCE_PATTERN.search(text)
        if m:
            token = m.group(1).rstrip("-/")
            if token:
                return token
    return None


def parse_voucher_date(raw) -> Optional[date]:
    """
    Tally hands out YYYYMMDD over XML, DD-MM-YYYY in some exports, and real
    date objects over ODBC. Returns None when nothing fits.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    s = _text(raw)
    if not s:
        return None
    if len(s) == 8 and s.isdigit():
        try:
            return datetime.strptime(s, "%Y%m%d").date()
        except ValueError:
            return None
    # ODBC drivers sometimes stringify with a time part.
    s = s.split(" ", 1)[0].split("T", 1)[0]
    parts = re.split(r"[-/.]", s)
    if len(parts) == 3 and all(parts):
        # Zero-pad D-M-YYYY so strptime is not at the mercy of single digits.
        if len(parts[0]) <= 2 and parts[1].isdigit() and len(parts[2]) == 4:
            s = f"{parts[0].zfill(2)}-{parts[1].zfill(2)}-{parts[2]}"
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(raw) -> Optional[Decimal]:
    """Absolute amount; Tally signs debit/credit sides, the face value is what matters here."""
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        val = raw
    else:
        # "1,250.00", "Rs. 1250", "-1250.00 Dr"
        m = _AMOUNT_NUMBER.search(_text(raw).replace(",", ""))
        if not m:
            return None
        try:
            val = Decimal(m.group(0))
        except InvalidOperation:
            return None
    if not val.is_finite():
        return None
    return abs(val).quantize(Decimal("0.01"))


def _resolve_date(raw, *, today: date, date_policy: str) -> Tuple[Optional[date], bool]:
    d = parse_voucher_date(raw)
    if d is not None:
        return d, False
    if date_policy == "today":
        return today, True
    return None, False


def _require(raw: RawVoucher, *, today: date, date_policy: str):
    number = _text(raw.voucher_number)
    party = _text(raw.party_name)
    amount = parse_amount(raw.amount)
    missing = []
    if not number:
        missing.append("voucher_number")
    if not _text(raw.date) and not isinstance(raw.date, date):
        missing.append("date")
    if not party:
        missing.append("party_name")
    if amount is None or amount == 0:
        missing.append("amount")
    if missing:
        raise MalformedRecord(f"voucher {number or '?'} missing {', '.join(missing)}")

    d, defaulted = _resolve_date(raw.date, today=today, date_policy=date_policy)
    if d is None:
        raise MalformedRecord(f"voucher {number} has unparsable date {raw.date!r}")
    return number, d, defaulted, party, amount


def parse_bill(raw: RawVoucher, *, today: date, date_policy: str = "today") -> dict:
    number, d, defaulted, party, amount = _require(raw, today=today, date_policy=date_policy)
    return {
        "bill_no": number,
        "bill_date": d,
        "party_name": party,
        "amount": amount,
        "date_defaulted": defaulted,
    }


def parse_receipt(raw: RawVoucher, *, today: date, date_policy: str = "today") -> dict:
    number, d, defaulted, party, amount = _require(raw, today=today, date_policy=date_policy)
    narration = _text(raw.narration)
    reference = _text(raw.reference)
    return {
        "receipt_no": number,
        "receipt_date": d,
        "party_name": party,
        "amount": amount,
        "mode": classify_payment_mode(narration),
        "ref_text": narration or reference or None,
        "bill_reference": extract_bill_reference(narration, reference),
        "date_defaulted": defaulted,
    }
