from datetime import date
from typing import Optional

from fastapi import APIRouter

from ..cheques import (
    CHEQUE_STATUSES,
    ChequeStatusIn,
    DepositBatchIn,
    create_deposit_batch,
    list_cheques,
    set_cheque_status,
)
from ..db import get_conn
from ..errors import InvalidInput

router = APIRouter(prefix="/cheques", tags=["cheques"])


@router.get("")
def get_cheques(status: Optional[str] = None, day: Optional[date] = None):
    s = (status or "").strip().upper() or None
    if s and s not in CHEQUE_STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(CHEQUE_STATUSES)}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return list_cheques(cur, s, day)


@router.post("/deposit-batch")
def create_cheque_deposit_batch(data: DepositBatchIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return create_deposit_batch(cur, data)


@router.post("/{cheque_id}/status")
def update_cheque_status(cheque_id: str, data: ChequeStatusIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"cheque": set_cheque_status(cur, cheque_id, data.status)}
