from datetime import datetime
from decimal import Decimal

import pytest

from backend.app.status import (
    bill_status,
    cash_variance,
    expected_cash,
    release_state,
    till_adjustment_total,
    with_bill_status,
)


def test_bill_status_due_part_paid_paid():
    assert bill_status(Decimal("1000"), 0)["status"] == "DUE"

    part = bill_status(Decimal("1000"), Decimal("400"))
    assert part["status"] == "PART-PAID"
    assert part["remaining_due"] == Decimal("600")

    paid = bill_status(Decimal("1000"), Decimal("1000"))
    assert paid["status"] == "PAID"
    assert paid["remaining_due"] == Decimal("0")


def test_bill_status_overpaid_clamps_remaining_due():
    s = bill_status(Decimal("1000"), Decimal("1200"))
    assert s["status"] == "PAID"
    assert s["remaining_due"] == Decimal("0")
    assert s["overpaid"] == Decimal("200")


def test_bill_status_handles_none_totals():
    s = bill_status("250.00", None)
    assert s["status"] == "DUE"
    assert s["receipt_total"] == Decimal("0")
    assert s["remaining_due"] == Decimal("250.00")


def test_with_bill_status_keeps_row_fields():
    row = {"bill_no": "S-1", "amount": Decimal("100"), "receipt_total": Decimal("40")}
    out = with_bill_status(row)
    assert out["bill_no"] == "S-1"
    assert out["status"] == "PART-PAID"
    assert "status" not in row


def test_release_state_variants():
    assert release_state(None, None) == "READY"
    assert release_state({"bill_no": "S-1"}, None) == "RELEASED_SELF"
    assert release_state(None, {"bill_no": "S-1", "delivered_at": None}) == "IN_TRANSIT"
    assert release_state(None, {"bill_no": "S-1", "delivered_at": datetime(2024, 3, 20, 15, 0)}) == "DELIVERED"


def test_till_adjustment_total_signs():
    total = till_adjustment_total(
        [
            {"type": "ADD_TO_TILL", "amount": Decimal("200")},
            {"type": "REMOVE_FROM_TILL", "amount": Decimal("50")},
        ]
    )
    assert total == Decimal("150")


def test_till_adjustment_total_rejects_unknown_type():
    with pytest.raises(ValueError):
        till_adjustment_total([{"type": "FLOAT", "amount": 1}])


def test_cash_variance_short_till_requires_approval():
    # Opened with 1000, took 1500 in cash, counted 2000 at close.
    exp = expected_cash(Decimal("1000"), Decimal("1500"), 0, 0)
    assert exp == Decimal("2500")
    v = cash_variance(Decimal("2000"), exp, Decimal("100"))
    assert v["variance"] == Decimal("-500")
    assert v["requires_approval"] is True


def test_cash_variance_within_threshold():
    exp = expected_cash(Decimal("500"), Decimal("300"), Decimal("20"), Decimal("-30"))
    assert exp == Decimal("750")
    v = cash_variance(Decimal("800"), exp, Decimal("100"))
    assert v["variance"] == Decimal("50")
    assert v["requires_approval"] is False

    edge = cash_variance(Decimal("850"), exp, Decimal("100"))
    assert edge["requires_approval"] is False
