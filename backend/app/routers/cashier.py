from fastapi import APIRouter

from ..config import settings
from ..db import get_conn
from ..errors import Forbidden
from ..security import find_manager_by_pin
from ..sessions import (
    PaymentHintIn,
    PettyCashIn,
    SessionApproveIn,
    SessionCloseIn,
    SessionOpenIn,
    TillAdjustmentIn,
    add_petty_cash,
    add_till_adjustment,
    approve_session,
    close_session,
    current_session,
    list_variance_alerts,
    open_session,
    record_payment_hint,
)

router = APIRouter(prefix="/cashier", tags=["cashier"])


@router.post("/sessions/open")
def open_cashier_session(data: SessionOpenIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"session": open_session(cur, data)}


@router.get("/sessions/current")
def get_current_session(cashier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"session": current_session(cur, cashier_id)}


@router.post("/sessions/{session_id}/close")
def close_cashier_session(session_id: str, data: SessionCloseIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"session": close_session(cur, session_id, data, settings.cash_variance_threshold)}


@router.post("/sessions/{session_id}/approve")
def approve_cashier_session(session_id: str, data: SessionApproveIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            manager = find_manager_by_pin(cur, data.manager_pin)
            if not manager:
                raise Forbidden("invalid manager PIN", reason="INVALID_MANAGER_PIN")
            return {"session": approve_session(cur, session_id, manager["id"], data.notes)}


@router.get("/variance-alerts")
def variance_alerts(limit: int = 50):
    limit = max(1, min(int(limit or 50), 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"sessions": list_variance_alerts(cur, limit), "threshold": settings.cash_variance_threshold}


@router.post("/petty-cash")
def create_petty_cash(data: PettyCashIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"petty_cash": add_petty_cash(cur, data)}


@router.post("/till-adjustments")
def create_till_adjustment(data: TillAdjustmentIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"adjustment": add_till_adjustment(cur, data)}


@router.post("/payment-hints")
def create_payment_hint(data: PaymentHintIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"payment_hint": record_payment_hint(cur, data)}
