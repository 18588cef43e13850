from fastapi import APIRouter
from datetime import date
from decimal import Decimal
from typing import Optional

from ..db import get_conn
from ..errors import InvalidInput, NotFound
from ..release import get_release
from ..sessions import active_sessions
from ..status import (
    BILL_DUE,
    BILL_PAID,
    BILL_PART_PAID,
    RELEASE_DELIVERED,
    RELEASE_IN_TRANSIT,
    RELEASE_READY,
    RELEASE_SELF,
    release_state,
    with_bill_status,
)

router = APIRouter(tags=["bills"])

_STATUSES = (BILL_DUE, BILL_PART_PAID, BILL_PAID)
_RELEASE_STATES = (RELEASE_READY, RELEASE_SELF, RELEASE_IN_TRANSIT, RELEASE_DELIVERED)
# Dispatch works the paid bills first.
_QUEUE_ORDER = {BILL_PAID: 0, BILL_PART_PAID: 1, BILL_DUE: 2}


def _row_release_state(row: dict) -> str:
    kind = row.get("release_type")
    return release_state(
        row if kind == "SELF" else None,
        row if kind == "TRANSPORTER" else None,
    )


def _bills_for_day(cur, day: date) -> list[dict]:
    cur.execute(
        """
        SELECT b.bill_no, b.bill_date, b.party_name, b.amount, b.last_sync_ts,
               COALESCE(SUM(r.amount), 0) AS receipt_total,
               g.gatepass_id, g.release_type, rt.delivered_at
        FROM bill b
        LEFT JOIN receipt r ON r.bill_no = b.bill_no
        LEFT JOIN gatepass g ON g.bill_no = b.bill_no
        LEFT JOIN release_transporter rt ON rt.bill_no = b.bill_no
        WHERE b.bill_date = %s
        GROUP BY b.bill_no, g.gatepass_id, g.release_type, rt.delivered_at
        ORDER BY b.bill_no
        """,
        (day,),
    )
    out = []
    for r in cur.fetchall():
        row = with_bill_status(r)
        row["release_state"] = _row_release_state(r)
        out.append(row)
    return out


def _fetch_bill_detail(cur, bill_no: str) -> dict:
    cur.execute(
        """
        SELECT b.bill_no, b.bill_date, b.party_name, b.amount, b.last_sync_ts, b.created_at,
               COALESCE(SUM(r.amount), 0) AS receipt_total
        FROM bill b
        LEFT JOIN receipt r ON r.bill_no = b.bill_no
        WHERE b.bill_no = %s
        GROUP BY b.bill_no
        """,
        (bill_no,),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound(f"bill {bill_no} not found")
    bill = with_bill_status(row)

    cur.execute(
        """
        SELECT id, session_id, cashier_id, cash_amt, cheque_amt, cheque_no, bank,
               digital_amt, digital_ref, remaining_due, notes, created_at
        FROM payment_hint
        WHERE bill_no = %s
        ORDER BY created_at
        """,
        (bill_no,),
    )
    payments = cur.fetchall()

    cur.execute(
        """
        SELECT receipt_no, receipt_date, amount, mode, ref_text, mapped_by, mapped_at
        FROM receipt
        WHERE bill_no = %s
        ORDER BY receipt_date, receipt_no
        """,
        (bill_no,),
    )
    receipts = cur.fetchall()

    release = get_release(cur, bill_no)

    cur.execute(
        """
        SELECT id, gatepass_id, vehicle_no, security_id, gate_ts
        FROM gate_log
        WHERE bill_no = %s
        ORDER BY gate_ts
        """,
        (bill_no,),
    )
    gate_logs = cur.fetchall()

    bill["release_state"] = release["release_state"] if release else RELEASE_READY
    return {
        "bill": bill,
        "payments": payments,
        "receipts": receipts,
        "release": release,
        "gate_logs": gate_logs,
    }


@router.get("/bills")
def list_bills(day: Optional[date] = None, status: Optional[str] = None):
    wanted = (status or "").strip().upper() or None
    if wanted and wanted not in _STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(_STATUSES)}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = _bills_for_day(cur, day or date.today())
    if wanted:
        rows = [r for r in rows if r["status"] == wanted]
    return {"bills": rows}


@router.get("/bills/{bill_no}")
def get_bill(bill_no: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return _fetch_bill_detail(cur, bill_no)


@router.get("/dispatch/queue")
def dispatch_queue(day: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = _bills_for_day(cur, day or date.today())
    pending = [r for r in rows if r["release_state"] == RELEASE_READY]
    pending.sort(key=lambda r: (_QUEUE_ORDER[r["status"]], r["bill_no"]))
    return {"bills": pending}


@router.get("/dashboard")
def dashboard(day: Optional[date] = None):
    day = day or date.today()
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = _bills_for_day(cur, day)
            sessions = active_sessions(cur)

    by_status = {s: {"count": 0, "amount": Decimal("0"), "remaining_due": Decimal("0")} for s in _STATUSES}
    by_release = {s: 0 for s in _RELEASE_STATES}
    for r in rows:
        bucket = by_status[r["status"]]
        bucket["count"] += 1
        bucket["amount"] += Decimal(str(r["amount"]))
        bucket["remaining_due"] += r["remaining_due"]
        by_release[r["release_state"]] += 1
    return {
        "date": day,
        "total_bills": len(rows),
        "by_status": by_status,
        "by_release_state": by_release,
        "active_sessions": sessions,
    }
