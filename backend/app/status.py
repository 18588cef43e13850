"""
Derived status and cash reconciliation.

Nothing here is stored: bill status and release state are recomputed from the
committed rows every time they are read.
"""

from decimal import Decimal
from typing import Iterable, Optional

ZERO = Decimal("0")

BILL_DUE = "DUE"
BILL_PART_PAID = "PART-PAID"
BILL_PAID = "PAID"

RELEASE_READY = "READY"
RELEASE_SELF = "RELEASED_SELF"
RELEASE_IN_TRANSIT = "IN_TRANSIT"
RELEASE_DELIVERED = "DELIVERED"

TILL_ADD = "ADD_TO_TILL"
TILL_REMOVE = "REMOVE_FROM_TILL"


def _dec(v) -> Decimal:
    return Decimal(str(v or 0))


def bill_status(amount, receipt_total) -> dict:
    """
    Payment status of one bill from the sum of receipts mapped to it.

    `remaining_due` is clamped at zero; anything received beyond the face
    amount is reported separately as `overpaid` so callers never see a
    negative due.
    """
    amt = _dec(amount)
    total = _dec(receipt_total)
    if total == 0:
        status = BILL_DUE
    elif total >= amt:
        status = BILL_PAID
    else:
        status = BILL_PART_PAID
    raw_due = amt - total
    return {
        "status": status,
        "receipt_total": total,
        "remaining_due": raw_due if raw_due > 0 else ZERO,
        "overpaid": -raw_due if raw_due < 0 else ZERO,
    }


def with_bill_status(row: dict) -> dict:
    """Copy of a bill row (needs `amount`, `receipt_total`) with status fields added."""
    out = dict(row)
    out.update(bill_status(row.get("amount"), row.get("receipt_total")))
    return out


def release_state(self_release: Optional[dict], transporter_release: Optional[dict]) -> str:
    if self_release:
        return RELEASE_SELF
    if transporter_release:
        if transporter_release.get("delivered_at"):
            return RELEASE_DELIVERED
        return RELEASE_IN_TRANSIT
    return RELEASE_READY


def till_adjustment_total(adjustments: Iterable[dict]) -> Decimal:
    total = ZERO
    for a in adjustments:
        amt = _dec(a.get("amount"))
        if a.get("type") == TILL_ADD:
            total += amt
        elif a.get("type") == TILL_REMOVE:
            total -= amt
        else:
            raise ValueError(f"unknown till adjustment type: {a.get('type')!r}")
    return total


def expected_cash(opening_float, cash_in, petty_cash_out, till_adjustments) -> Decimal:
    """opening float + cash taken - petty cash paid out +/- till adjustments."""
    return _dec(opening_float) + _dec(cash_in) - _dec(petty_cash_out) + _dec(till_adjustments)


def cash_variance(counted, expected, threshold) -> dict:
    variance = _dec(counted) - _dec(expected)
    return {
        "variance": variance,
        "requires_approval": abs(variance) > _dec(threshold),
    }
