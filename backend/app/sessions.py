"""
Cashier sessions (till shifts) and the cash they should hold.

A cashier has at most one ACTIVE session. Closing computes expected cash from
the opening float, cash portions of payment hints taken in the session window,
petty cash paid out and till adjustments; a variance beyond the configured
threshold is flagged for approval but the close still goes through.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from psycopg.errors import UniqueViolation  # type: ignore
from pydantic import BaseModel, Field

from .errors import DuplicateActiveSession, InvalidInput, NotFound, SessionRejected
from .logs import json_log
from .status import BILL_PAID, bill_status, cash_variance, expected_cash, till_adjustment_total
from .validation import BillNo, TillAdjustmentType

STATUS_ACTIVE = "ACTIVE"
STATUS_CLOSED = "CLOSED"


class SessionOpenIn(BaseModel):
    cashier_id: str
    opening_float: Decimal = Decimal("0")
    opened_by: Optional[str] = None


class SessionCloseIn(BaseModel):
    counted_cash: Decimal
    closed_by: Optional[str] = None
    notes: Optional[str] = None


class SessionApproveIn(BaseModel):
    manager_pin: str = Field(min_length=4, max_length=12)
    notes: Optional[str] = None


class PettyCashIn(BaseModel):
    cashier_id: str
    amount: Decimal
    purpose: str = Field(min_length=1, max_length=200)
    vendor: Optional[str] = None
    approved_by: Optional[str] = None


class TillAdjustmentIn(BaseModel):
    cashier_id: str
    type: TillAdjustmentType
    amount: Decimal
    reason: str = Field(min_length=1, max_length=200)


class PaymentHintIn(BaseModel):
    bill_no: BillNo
    cashier_id: str
    cash_amt: Decimal = Decimal("0")
    cheque_amt: Decimal = Decimal("0")
    cheque_no: Optional[str] = None
    bank: Optional[str] = None
    cheque_date: Optional[date] = None
    digital_amt: Decimal = Decimal("0")
    digital_ref: Optional[str] = None
    notes: Optional[str] = None


def _assert_non_negative(amount: Decimal, label: str) -> None:
    if Decimal(str(amount or 0)) < 0:
        raise InvalidInput(f"{label} must be >= 0")


def _assert_positive(amount: Decimal, label: str) -> None:
    if Decimal(str(amount or 0)) <= 0:
        raise InvalidInput(f"{label} must be > 0")


def active_session(cur, cashier_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, cashier_id, status, start_ts, end_ts, start_float
        FROM cashier_session
        WHERE cashier_id = %s AND status = 'ACTIVE'
        """,
        (cashier_id,),
    )
    return cur.fetchone()


def require_active_session(cur, cashier_id: str) -> dict:
    row = active_session(cur, cashier_id)
    if not row:
        raise SessionRejected(f"cashier {cashier_id} has no active session", reason="NO_ACTIVE_SESSION")
    return row


def open_session(cur, data: SessionOpenIn) -> dict:
    _assert_non_negative(data.opening_float, "opening float")
    if active_session(cur, data.cashier_id):
        raise DuplicateActiveSession(f"cashier {data.cashier_id} already has an active session")
    try:
        cur.execute(
            """
            INSERT INTO cashier_session (cashier_id, start_ts, start_float, opened_by, status)
            VALUES (%s, now(), %s, %s, 'ACTIVE')
            RETURNING id, cashier_id, status, start_ts, start_float
            """,
            (data.cashier_id, data.opening_float, data.opened_by or data.cashier_id),
        )
    except UniqueViolation:
        # Partial unique index on (cashier_id) WHERE status = 'ACTIVE' caught a concurrent open.
        raise DuplicateActiveSession(f"cashier {data.cashier_id} already has an active session") from None
    return cur.fetchone()


def _expected_cash(cur, session: dict) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(cash_amt), 0) AS cash_in
        FROM payment_hint
        WHERE cashier_id = %s
          AND created_at >= %s
          AND created_at <= COALESCE(%s, now())
        """,
        (session["cashier_id"], session["start_ts"], session.get("end_ts")),
    )
    cash_in = Decimal(str((cur.fetchone() or {}).get("cash_in") or 0))

    cur.execute(
        "SELECT COALESCE(SUM(amount), 0) AS petty_out FROM petty_cash WHERE session_id = %s",
        (session["id"],),
    )
    petty_out = Decimal(str((cur.fetchone() or {}).get("petty_out") or 0))

    cur.execute("SELECT type, amount FROM till_adjustment WHERE session_id = %s", (session["id"],))
    adjustments = till_adjustment_total(cur.fetchall())

    return {
        "cash_in": cash_in,
        "petty_cash_out": petty_out,
        "till_adjustments": adjustments,
        "expected_cash": expected_cash(session["start_float"], cash_in, petty_out, adjustments),
    }


def current_session(cur, cashier_id: str) -> dict:
    session = active_session(cur, cashier_id)
    if not session:
        raise NotFound(f"cashier {cashier_id} has no active session")
    return {**session, **_expected_cash(cur, session)}


def add_petty_cash(cur, data: PettyCashIn) -> dict:
    _assert_positive(data.amount, "petty cash amount")
    session = require_active_session(cur, data.cashier_id)
    cur.execute(
        """
        INSERT INTO petty_cash (session_id, amount, purpose, vendor, approved_by)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id, session_id, amount, purpose, vendor, created_at
        """,
        (session["id"], data.amount, data.purpose.strip(), data.vendor, data.approved_by),
    )
    return cur.fetchone()


def add_till_adjustment(cur, data: TillAdjustmentIn) -> dict:
    _assert_positive(data.amount, "adjustment amount")
    session = require_active_session(cur, data.cashier_id)
    cur.execute(
        """
        INSERT INTO till_adjustment (session_id, type, amount, reason)
        VALUES (%s, %s, %s, %s)
        RETURNING id, session_id, type, amount, reason, created_at
        """,
        (session["id"], data.type, data.amount, data.reason.strip()),
    )
    return cur.fetchone()


def record_payment_hint(cur, data: PaymentHintIn) -> dict:
    for amt, label in ((data.cash_amt, "cash"), (data.cheque_amt, "cheque"), (data.digital_amt, "digital")):
        _assert_non_negative(amt, f"{label} amount")
    paid = Decimal(str(data.cash_amt)) + Decimal(str(data.cheque_amt)) + Decimal(str(data.digital_amt))
    if paid <= 0:
        raise InvalidInput("payment hint needs at least one positive amount")
    if data.cheque_amt > 0 and not (data.cheque_no or "").strip():
        raise InvalidInput("cheque number is required for a cheque amount")

    session = require_active_session(cur, data.cashier_id)
    cur.execute(
        """
        SELECT b.bill_no, b.amount,
               COALESCE((SELECT SUM(ph.cash_amt + ph.cheque_amt + ph.digital_amt)
                         FROM payment_hint ph WHERE ph.bill_no = b.bill_no), 0) AS hinted
        FROM bill b
        WHERE b.bill_no = %s
        """,
        (data.bill_no,),
    )
    bill = cur.fetchone()
    if not bill:
        raise NotFound(f"bill {data.bill_no} not found")
    remaining = Decimal(str(bill["amount"])) - Decimal(str(bill.get("hinted") or 0)) - paid
    if remaining < 0:
        remaining = Decimal("0")

    cur.execute(
        """
        INSERT INTO payment_hint
          (bill_no, session_id, cashier_id, cash_amt, cheque_amt, cheque_no, bank,
           digital_amt, digital_ref, remaining_due, notes)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, bill_no, session_id, cash_amt, cheque_amt, digital_amt, remaining_due, created_at
        """,
        (
            data.bill_no,
            session["id"],
            data.cashier_id,
            data.cash_amt,
            data.cheque_amt,
            data.cheque_no,
            data.bank,
            data.digital_amt,
            data.digital_ref,
            remaining,
            data.notes,
        ),
    )
    hint = cur.fetchone()

    if data.cheque_amt > 0:
        cur.execute(
            """
            INSERT INTO cheque_register (payment_hint_id, bill_no, cheque_no, bank, cheque_date, amount)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (hint["id"], data.bill_no, data.cheque_no.strip(), data.bank, data.cheque_date, data.cheque_amt),
        )
    if data.digital_amt > 0:
        cur.execute(
            """
            INSERT INTO digital_payment_ref (payment_hint_id, bill_no, reference, amount)
            VALUES (%s, %s, %s, %s)
            """,
            (hint["id"], data.bill_no, data.digital_ref, data.digital_amt),
        )
    return hint


def _unreleased_paid_bills(cur, session_id: str) -> List[str]:
    cur.execute(
        """
        SELECT b.bill_no, b.amount,
               COALESCE((SELECT SUM(r.amount) FROM receipt r WHERE r.bill_no = b.bill_no), 0) AS receipt_total
        FROM bill b
        WHERE b.bill_no IN (SELECT ph.bill_no FROM payment_hint ph WHERE ph.session_id = %s)
          AND NOT EXISTS (SELECT 1 FROM gatepass g WHERE g.bill_no = b.bill_no)
        ORDER BY b.bill_no
        """,
        (session_id,),
    )
    return [
        r["bill_no"]
        for r in cur.fetchall()
        if bill_status(r["amount"], r["receipt_total"])["status"] == BILL_PAID
    ]


def close_session(cur, session_id: str, data: SessionCloseIn, threshold: Decimal) -> dict:
    _assert_non_negative(data.counted_cash, "counted cash")
    cur.execute(
        """
        SELECT id, cashier_id, status, start_ts, end_ts, start_float
        FROM cashier_session
        WHERE id = %s
        FOR UPDATE
        """,
        (session_id,),
    )
    session = cur.fetchone()
    if not session:
        raise NotFound(f"session {session_id} not found")
    if session["status"] != STATUS_ACTIVE:
        raise SessionRejected(f"session {session_id} is {session['status']}", reason="SESSION_NOT_ACTIVE")

    pending = _unreleased_paid_bills(cur, session_id)
    if pending:
        raise SessionRejected(
            f"paid bills not yet released: {', '.join(pending)}",
            reason="UNRELEASED_PAID_BILLS",
        )

    figures = _expected_cash(cur, session)
    v = cash_variance(data.counted_cash, figures["expected_cash"], threshold)
    cur.execute(
        """
        UPDATE cashier_session
        SET status = 'CLOSED',
            end_ts = now(),
            counted_cash = %s,
            expected_cash = %s,
            variance = %s,
            requires_approval = %s,
            closed_by = %s,
            notes = COALESCE(%s, notes)
        WHERE id = %s
        RETURNING id, cashier_id, status, start_ts, end_ts, start_float,
                  counted_cash, expected_cash, variance, requires_approval
        """,
        (
            data.counted_cash,
            figures["expected_cash"],
            v["variance"],
            v["requires_approval"],
            data.closed_by,
            data.notes,
            session_id,
        ),
    )
    row = cur.fetchone()
    json_log(
        "warning" if v["requires_approval"] else "info",
        "session.closed",
        session_id=session_id,
        cashier_id=session["cashier_id"],
        expected_cash=figures["expected_cash"],
        variance=v["variance"],
        requires_approval=v["requires_approval"],
    )
    return {**row, **figures, "variance_threshold": threshold}


def approve_session(cur, session_id: str, manager_id: str, notes: Optional[str] = None) -> dict:
    cur.execute("SELECT id, status FROM cashier_session WHERE id = %s FOR UPDATE", (session_id,))
    session = cur.fetchone()
    if not session:
        raise NotFound(f"session {session_id} not found")
    if session["status"] != STATUS_CLOSED:
        raise SessionRejected(f"session {session_id} is {session['status']}", reason="SESSION_NOT_CLOSED")
    cur.execute(
        """
        UPDATE cashier_session
        SET status = 'APPROVED', approved_by = %s, approved_at = now(), notes = COALESCE(%s, notes)
        WHERE id = %s
        RETURNING id, cashier_id, status, variance, approved_by, approved_at
        """,
        (manager_id, notes, session_id),
    )
    return cur.fetchone()


def list_variance_alerts(cur, limit: int = 50) -> List[dict]:
    cur.execute(
        """
        SELECT id, cashier_id, start_ts, end_ts, start_float, counted_cash, expected_cash, variance
        FROM cashier_session
        WHERE status = 'CLOSED' AND requires_approval = true
        ORDER BY end_ts DESC
        LIMIT %s
        """,
        (limit,),
    )
    return cur.fetchall()


def active_sessions(cur) -> List[dict]:
    cur.execute(
        """
        SELECT s.id, s.cashier_id, u.username AS cashier_name, s.start_ts, s.start_float
        FROM cashier_session s
        LEFT JOIN users u ON u.id = s.cashier_id
        WHERE s.status = 'ACTIVE'
        ORDER BY s.start_ts
        """
    )
    return cur.fetchall()
