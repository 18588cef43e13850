from datetime import date
from decimal import Decimal

import pytest

from backend.app.cheques import (
    ChequeStatusIn,
    DepositBatchIn,
    create_deposit_batch,
    list_cheques,
    set_cheque_status,
)
from backend.app.errors import Conflict, NotFound

CHQ_1 = "7f1c0000-0000-4000-8000-000000000001"
CHQ_2 = "7f1c0000-0000-4000-8000-000000000002"
CHQ_3 = "7f1c0000-0000-4000-8000-000000000003"


class _ChequeCursor:
    def __init__(self, cheques):
        self.cheques = {c["id"]: dict(c) for c in cheques}
        self.batches = []
        self.rows = []
        self.executed = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, params))
        if text.startswith("select cr.id, cr.bill_no"):
            rows = list(self.cheques.values())
            if "cr.status = %s" in text:
                rows = [r for r in rows if r["status"] == params[0]]
            self.rows = [{**r, "party_name": "Acme", "bill_date": date(2024, 3, 20)} for r in rows]
            return
        if text.startswith("select db.id, db.bank_name"):
            self.rows = list(self.batches)
            return
        if text.startswith("select id, status, amount from cheque_register"):
            self.rows = [self.cheques[i] for i in params[0] if i in self.cheques]
            return
        if text.startswith("insert into deposit_batch"):
            batch = {
                "id": f"batch-{len(self.batches) + 1}",
                "bank_name": params[0],
                "deposit_date": params[1],
                "total_cash": params[2],
                "total_cheque": params[3],
            }
            self.batches.append(batch)
            self.rows = [batch]
            return
        if text.startswith("update cheque_register set status = 'deposited'"):
            for i in params[1]:
                self.cheques[i].update(status="DEPOSITED", deposit_batch_id=params[0])
            self.rows = []
            return
        if text.startswith("select id, status from cheque_register"):
            c = self.cheques.get(params[0])
            self.rows = [c] if c else []
            return
        if text.startswith("update cheque_register set status = %s"):
            self.cheques[params[1]]["status"] = params[0]
            self.rows = [self.cheques[params[1]]]
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


def _cheque(cheque_id, amount, status="PENDING"):
    return {"id": cheque_id, "bill_no": "S-1", "cheque_no": "0044", "amount": Decimal(amount), "status": status}


def test_list_cheques_summarises_by_status():
    cur = _ChequeCursor([_cheque(CHQ_1, "500"), _cheque(CHQ_2, "250", "DEPOSITED"), _cheque(CHQ_3, "90", "BOUNCED")])
    out = list_cheques(cur)
    assert out["summary"] == {"total": 3, "pending": 1, "deposited": 1, "cleared": 0, "bounced": 1}

    pending = list_cheques(cur, status="PENDING", day=date(2024, 3, 20))
    assert [c["id"] for c in pending["cheques"]] == [CHQ_1]
    text, params = cur.executed[-2]
    assert params == ("PENDING", date(2024, 3, 20))


def test_deposit_batch_moves_pending_cheques_to_deposited():
    cur = _ChequeCursor([_cheque(CHQ_1, "500"), _cheque(CHQ_2, "250.50")])
    out = create_deposit_batch(
        cur,
        DepositBatchIn(bank_name=" HDFC ", deposit_date=date(2024, 3, 21), cheque_ids=[CHQ_1, CHQ_2, CHQ_1]),
    )
    assert out["cheque_count"] == 2
    assert out["total_cheque"] == Decimal("750.50")
    assert out["batch"]["bank_name"] == "HDFC"
    assert {c["status"] for c in cur.cheques.values()} == {"DEPOSITED"}
    assert {c["deposit_batch_id"] for c in cur.cheques.values()} == {"batch-1"}


def test_deposit_batch_rejects_cheques_that_are_not_pending():
    cur = _ChequeCursor([_cheque(CHQ_1, "500"), _cheque(CHQ_2, "250", "DEPOSITED")])
    with pytest.raises(Conflict) as ex:
        create_deposit_batch(cur, DepositBatchIn(bank_name="HDFC", deposit_date=date(2024, 3, 21), cheque_ids=[CHQ_1, CHQ_2]))
    assert ex.value.reason == "CHEQUE_NOT_PENDING"
    assert cur.batches == []
    assert cur.cheques[CHQ_1]["status"] == "PENDING"


def test_deposit_batch_rejects_unknown_cheques():
    cur = _ChequeCursor([_cheque(CHQ_1, "500")])
    with pytest.raises(NotFound):
        create_deposit_batch(cur, DepositBatchIn(bank_name="HDFC", deposit_date=date(2024, 3, 21), cheque_ids=[CHQ_1, CHQ_3]))


def test_deposited_cheque_clears_or_bounces_once():
    cur = _ChequeCursor([_cheque(CHQ_1, "500", "DEPOSITED"), _cheque(CHQ_2, "250")])
    out = set_cheque_status(cur, CHQ_1, ChequeStatusIn(status="cleared").status)
    assert out["status"] == "CLEARED"

    with pytest.raises(Conflict) as ex:
        set_cheque_status(cur, CHQ_1, "BOUNCED")
    assert ex.value.reason == "INVALID_CHEQUE_TRANSITION"

    with pytest.raises(Conflict):
        set_cheque_status(cur, CHQ_2, "CLEARED")

    with pytest.raises(NotFound):
        set_cheque_status(cur, CHQ_3, "CLEARED")
