"""
Cheque register and bank deposit batches.

Cheques land here PENDING when a cashier records a payment hint with a cheque
portion. A deposit batch moves a set of PENDING cheques to DEPOSITED in one
transaction; the bank outcome later moves each to CLEARED or BOUNCED.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import Conflict, InvalidInput, NotFound
from .logs import json_log
from .validation import ChequeStatus

CHEQUE_PENDING = "PENDING"
CHEQUE_DEPOSITED = "DEPOSITED"
CHEQUE_CLEARED = "CLEARED"
CHEQUE_BOUNCED = "BOUNCED"
CHEQUE_STATUSES = (CHEQUE_PENDING, CHEQUE_DEPOSITED, CHEQUE_CLEARED, CHEQUE_BOUNCED)

# Bank outcomes only apply to cheques that went out in a batch.
_TRANSITIONS = {
    CHEQUE_DEPOSITED: {CHEQUE_CLEARED, CHEQUE_BOUNCED},
}


class DepositBatchIn(BaseModel):
    bank_name: str = Field(min_length=1, max_length=120)
    deposit_date: date
    total_cash: Decimal = Field(default=Decimal("0"), ge=0)
    cheque_ids: List[str] = Field(min_length=1)
    prepared_by: Optional[str] = None


class ChequeStatusIn(BaseModel):
    status: ChequeStatus


def list_cheques(cur, status: Optional[str] = None, day: Optional[date] = None) -> dict:
    where = ["1=1"]
    params: list = []
    if status:
        where.append("cr.status = %s")
        params.append(status)
    if day:
        where.append("b.bill_date = %s")
        params.append(day)
    cur.execute(
        f"""
        SELECT cr.id, cr.bill_no, cr.cheque_no, cr.bank, cr.cheque_date, cr.amount, cr.status,
               cr.deposit_batch_id, cr.created_at,
               b.party_name, b.bill_date,
               db.bank_name AS deposit_bank, db.deposit_date
        FROM cheque_register cr
        JOIN bill b ON b.bill_no = cr.bill_no
        LEFT JOIN deposit_batch db ON db.id = cr.deposit_batch_id
        WHERE {" AND ".join(where)}
        ORDER BY cr.created_at DESC
        """,
        tuple(params),
    )
    cheques = cur.fetchall()
    cur.execute(
        """
        SELECT db.id, db.bank_name, db.deposit_date, db.total_cash, db.total_cheque,
               db.prepared_by, db.created_at, count(cr.id) AS cheque_count
        FROM deposit_batch db
        LEFT JOIN cheque_register cr ON cr.deposit_batch_id = db.id
        GROUP BY db.id
        ORDER BY db.created_at DESC
        LIMIT 10
        """
    )
    batches = cur.fetchall()
    summary = {"total": len(cheques)}
    for s in CHEQUE_STATUSES:
        summary[s.lower()] = sum(1 for c in cheques if c["status"] == s)
    return {"cheques": cheques, "batches": batches, "summary": summary}


def create_deposit_batch(cur, data: DepositBatchIn) -> dict:
    ids = list(dict.fromkeys(i.strip() for i in data.cheque_ids if i and i.strip()))
    if not ids:
        raise InvalidInput("at least one cheque is required")
    cur.execute(
        """
        SELECT id, status, amount
        FROM cheque_register
        WHERE id = ANY(%s::uuid[])
        FOR UPDATE
        """,
        (ids,),
    )
    rows = cur.fetchall()
    found = {str(r["id"]) for r in rows}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFound(f"cheques not found: {', '.join(missing)}")
    not_pending = sorted(str(r["id"]) for r in rows if r["status"] != CHEQUE_PENDING)
    if not_pending:
        raise Conflict(f"cheques not pending: {', '.join(not_pending)}", reason="CHEQUE_NOT_PENDING")

    total_cheque = sum((Decimal(str(r["amount"])) for r in rows), Decimal("0"))
    cur.execute(
        """
        INSERT INTO deposit_batch (bank_name, deposit_date, total_cash, total_cheque, prepared_by)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id, bank_name, deposit_date, total_cash, total_cheque, prepared_by, created_at
        """,
        (data.bank_name.strip(), data.deposit_date, data.total_cash, total_cheque, data.prepared_by),
    )
    batch = cur.fetchone()
    cur.execute(
        """
        UPDATE cheque_register
        SET status = 'DEPOSITED', deposit_batch_id = %s, status_updated_at = now()
        WHERE id = ANY(%s::uuid[])
        """,
        (batch["id"], ids),
    )
    json_log("info", "cheques.deposited", batch_id=batch["id"], cheque_count=len(ids), total_cheque=total_cheque)
    return {"batch": batch, "cheque_count": len(ids), "total_cheque": total_cheque}


def set_cheque_status(cur, cheque_id: str, status: str) -> dict:
    cur.execute("SELECT id, status FROM cheque_register WHERE id = %s FOR UPDATE", (cheque_id,))
    cheque = cur.fetchone()
    if not cheque:
        raise NotFound(f"cheque {cheque_id} not found")
    if status not in _TRANSITIONS.get(cheque["status"], set()):
        raise Conflict(
            f"cheque {cheque_id} cannot move from {cheque['status']} to {status}",
            reason="INVALID_CHEQUE_TRANSITION",
        )
    cur.execute(
        """
        UPDATE cheque_register
        SET status = %s, status_updated_at = now()
        WHERE id = %s
        RETURNING id, bill_no, cheque_no, amount, status, deposit_batch_id, status_updated_at
        """,
        (status, cheque_id),
    )
    return cur.fetchone()
