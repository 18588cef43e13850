from fastapi import APIRouter
from pydantic import BaseModel, Field
from datetime import date
from typing import Optional
from psycopg.errors import UniqueViolation  # type: ignore

from ..db import get_conn
from ..errors import Conflict, NotFound
from ..logs import json_log
from ..status import release_state
from ..validation import GatepassId

router = APIRouter(prefix="/gate", tags=["gate"])


class GateExitIn(BaseModel):
    gatepass_id: GatepassId
    vehicle_no: Optional[str] = Field(default=None, max_length=20)
    security_id: Optional[str] = None


def _fetch_gatepass(cur, gatepass_id: str) -> dict:
    cur.execute(
        """
        SELECT g.gatepass_id, g.bill_no, g.release_type, g.issued_at,
               b.party_name, b.amount,
               rs.receiver_name, rs.released_at,
               rt.transporter_name, rt.vehicle_no, rt.driver_name, rt.pickup_at, rt.delivered_at,
               gl.id AS gate_log_id, gl.gate_ts
        FROM gatepass g
        JOIN bill b ON b.bill_no = g.bill_no
        LEFT JOIN release_self rs ON rs.gatepass_id = g.gatepass_id
        LEFT JOIN release_transporter rt ON rt.gatepass_id = g.gatepass_id
        LEFT JOIN gate_log gl ON gl.gatepass_id = g.gatepass_id
        WHERE g.gatepass_id = %s
        """,
        (gatepass_id,),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound(f"gatepass {gatepass_id} not found")
    kind = row.get("release_type")
    return {
        **row,
        "release_state": release_state(
            row if kind == "SELF" else None,
            row if kind == "TRANSPORTER" else None,
        ),
        "already_exited": row.get("gate_log_id") is not None,
    }


def _log_gate_exit(cur, data: GateExitIn) -> dict:
    gp = _fetch_gatepass(cur, data.gatepass_id)
    if gp["already_exited"]:
        raise Conflict(f"gatepass {data.gatepass_id} already logged at {gp['gate_ts']}", reason="ALREADY_LOGGED")
    vehicle = (data.vehicle_no or gp.get("vehicle_no") or "").strip().upper() or None
    try:
        cur.execute(
            """
            INSERT INTO gate_log (gatepass_id, bill_no, vehicle_no, security_id)
            VALUES (%s, %s, %s, %s)
            RETURNING id, gatepass_id, bill_no, vehicle_no, security_id, gate_ts
            """,
            (data.gatepass_id, gp["bill_no"], vehicle, data.security_id),
        )
    except UniqueViolation:
        raise Conflict(f"gatepass {data.gatepass_id} already logged", reason="ALREADY_LOGGED") from None
    row = cur.fetchone()
    json_log("info", "gate.exit", gatepass_id=data.gatepass_id, bill_no=gp["bill_no"])
    return row


@router.get("/gatepass/{gatepass_id}")
def validate_gatepass(gatepass_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"gatepass": _fetch_gatepass(cur, gatepass_id.strip().upper())}


@router.post("/logs")
def log_gate_exit(data: GateExitIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"gate_log": _log_gate_exit(cur, data)}


@router.get("/logs")
def list_gate_logs(day: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT gl.id, gl.gatepass_id, gl.bill_no, gl.vehicle_no, gl.security_id, gl.gate_ts,
                       b.party_name, g.release_type
                FROM gate_log gl
                JOIN gatepass g ON g.gatepass_id = gl.gatepass_id
                JOIN bill b ON b.bill_no = gl.bill_no
                WHERE gl.gate_ts::date = %s
                ORDER BY gl.gate_ts DESC
                """,
                (day or date.today(),),
            )
            return {"logs": cur.fetchall()}
