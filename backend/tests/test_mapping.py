from datetime import date
from decimal import Decimal

import pytest

from backend.app.errors import Conflict, NotFound
from backend.app.mapping import Mapping, map_receipt, map_unmapped, plan_mappings


def _bill(bill_no, party, amount, day, receipt_total="0"):
    return {
        "bill_no": bill_no,
        "bill_date": day,
        "party_name": party,
        "amount": Decimal(amount),
        "receipt_total": Decimal(receipt_total),
    }


def _receipt(receipt_no, party, amount, day, ref=None):
    return {
        "receipt_no": receipt_no,
        "receipt_date": day,
        "party_name": party,
        "amount": Decimal(amount),
        "bill_reference": ref,
    }


def test_fifo_picks_oldest_bill_that_covers_the_receipt():
    bills = [
        _bill("S-2", "Acme", "300", date(2024, 3, 2)),
        _bill("S-1", "Acme", "1000", date(2024, 3, 1)),
    ]
    receipts = [_receipt("R-1", "Acme", "500", date(2024, 3, 5))]
    assert plan_mappings(receipts, bills) == [Mapping("R-1", "S-1", "FIFO")]


def test_fifo_tracks_remaining_due_within_a_pass():
    bills = [
        _bill("S-1", "Acme", "1000", date(2024, 3, 1)),
        _bill("S-2", "Acme", "300", date(2024, 3, 2)),
    ]
    receipts = [
        _receipt("R-1", "Acme", "500", date(2024, 3, 5)),
        _receipt("R-2", "Acme", "500", date(2024, 3, 6)),
        _receipt("R-3", "Acme", "500", date(2024, 3, 7)),
    ]
    plan = plan_mappings(receipts, bills)
    # R-3 fits neither the now-settled S-1 nor the 300 of S-2, and receipts are never split.
    assert plan == [Mapping("R-1", "S-1", "FIFO"), Mapping("R-2", "S-1", "FIFO")]


def test_fifo_skips_bills_already_covered_by_earlier_receipts():
    bills = [
        _bill("S-1", "Acme", "1000", date(2024, 3, 1), receipt_total="1000"),
        _bill("S-2", "Acme", "800", date(2024, 3, 2)),
    ]
    receipts = [_receipt("R-9", "Acme", "800", date(2024, 3, 5))]
    assert plan_mappings(receipts, bills) == [Mapping("R-9", "S-2", "FIFO")]


def test_party_match_is_exact():
    bills = [_bill("S-1", "Acme Traders", "1000", date(2024, 3, 1))]
    receipts = [_receipt("R-1", "ACME TRADERS", "100", date(2024, 3, 5))]
    assert plan_mappings(receipts, bills) == []


def test_reference_wins_over_fifo():
    bills = [
        _bill("S-1", "Acme", "1000", date(2024, 3, 1)),
        _bill("S-2", "Acme", "300", date(2024, 3, 2)),
    ]
    receipts = [_receipt("R-1", "Acme", "300", date(2024, 3, 5), ref="S-2")]
    assert plan_mappings(receipts, bills) == [Mapping("R-1", "S-2", "REFERENCE")]


def test_reference_to_unknown_bill_waits_instead_of_falling_back():
    bills = [_bill("S-1", "Acme", "1000", date(2024, 3, 1))]
    receipts = [_receipt("R-1", "Acme", "300", date(2024, 3, 5), ref="S-404")]
    assert plan_mappings(receipts, bills) == []


def test_receipts_are_visited_oldest_first():
    bills = [_bill("S-1", "Acme", "500", date(2024, 3, 1))]
    receipts = [
        _receipt("R-2", "Acme", "500", date(2024, 3, 6)),
        _receipt("R-1", "Acme", "500", date(2024, 3, 5)),
    ]
    assert plan_mappings(receipts, bills) == [Mapping("R-1", "S-1", "FIFO")]


class _MappingCursor:
    def __init__(self, receipts, bills, already_linked=()):
        self.receipts = receipts
        self.bills = bills
        self.already_linked = set(already_linked)
        self.rows = []
        self.rowcount = 0
        self.updates = []
        self.bill_query_params = None

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if "from receipt where bill_no is null" in text and "for update skip locked" in text:
            self.rows = list(self.receipts)
            return
        if "from bill b left join receipt r" in text:
            self.bill_query_params = params
            self.rows = list(self.bills)
            return
        if text.startswith("update receipt set bill_no"):
            bill_no, method, receipt_no = params
            self.updates.append((receipt_no, bill_no, method))
            self.rowcount = 0 if receipt_no in self.already_linked else 1
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None


def test_map_unmapped_links_and_counts_rows():
    cur = _MappingCursor(
        receipts=[
            _receipt("R-1", "Acme", "500", date(2024, 3, 5)),
            _receipt("R-2", "Beta", "200", date(2024, 3, 5), ref="S-9"),
        ],
        bills=[
            _bill("S-1", "Acme", "1000", date(2024, 3, 1)),
            _bill("S-9", "Other", "200", date(2024, 3, 2)),
        ],
    )
    assert map_unmapped(cur) == 2
    assert cur.updates == [("R-1", "S-1", "FIFO"), ("R-2", "S-9", "REFERENCE")]
    parties, refs = cur.bill_query_params
    assert parties == ["Acme", "Beta"]
    assert refs == ["S-9"]


def test_map_unmapped_does_not_count_receipts_linked_concurrently():
    cur = _MappingCursor(
        receipts=[_receipt("R-1", "Acme", "500", date(2024, 3, 5))],
        bills=[_bill("S-1", "Acme", "1000", date(2024, 3, 1))],
        already_linked={"R-1"},
    )
    assert map_unmapped(cur) == 0


def test_map_unmapped_with_nothing_pending_skips_bill_query():
    cur = _MappingCursor(receipts=[], bills=[])
    assert map_unmapped(cur) == 0
    assert cur.bill_query_params is None


class _ManualMapCursor:
    def __init__(self, receipt=None, bill_exists=True):
        self.receipt = receipt
        self.bill_exists = bill_exists
        self.row = None
        self.updated = None

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select receipt_no, bill_no from receipt"):
            self.row = self.receipt
            return
        if text.startswith("select bill_no from bill"):
            self.row = {"bill_no": params[0]} if self.bill_exists else None
            return
        if text.startswith("update receipt"):
            self.updated = params
            self.row = {"receipt_no": params[3], "bill_no": params[0], "mapped_by": params[1], "mapped_at": None}
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.row


def test_map_receipt_manual_link():
    cur = _ManualMapCursor(receipt={"receipt_no": "R-1", "bill_no": None})
    out = map_receipt(cur, "R-1", "S-1", mapped_by_user="u-1")
    assert out["bill_no"] == "S-1"
    assert out["mapped_by"] == "MANUAL"
    assert cur.updated[2] == "u-1"


def test_map_receipt_rejects_mapped_and_unknown():
    with pytest.raises(Conflict) as ex:
        map_receipt(_ManualMapCursor(receipt={"receipt_no": "R-1", "bill_no": "S-2"}), "R-1", "S-1")
    assert ex.value.reason == "RECEIPT_ALREADY_MAPPED"

    with pytest.raises(NotFound):
        map_receipt(_ManualMapCursor(receipt=None), "R-404", "S-1")

    with pytest.raises(NotFound):
        map_receipt(_ManualMapCursor(receipt={"receipt_no": "R-1", "bill_no": None}, bill_exists=False), "R-1", "S-404")
