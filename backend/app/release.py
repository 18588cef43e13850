"""
Exactly-once release of goods against a bill.

    handle = coordinator.begin_release(bill_no)   # locks the bill row
    handle.commit_self(data, approval)            # re-checks, inserts, commits

`begin_release` opens a transaction, takes `SELECT ... FOR UPDATE` on the bill
(bounded by `lock_timeout`) and rejects bills that already have a gatepass.
The commit re-checks the gatepass id, applies the approval rule for bills with
money still due, inserts the gatepass + release rows and commits. Any exit
without a commit rolls back and hands the connection back to the pool.

The `gatepass` table carries both release variants, so its primary key
(gatepass id) and its unique bill_no are the database backstop for the two
checks made under the lock.
"""

import sys
from decimal import Decimal
from typing import NamedTuple, Optional

from psycopg import errors as pg_errors
from pydantic import BaseModel, Field

from . import db
from .config import settings
from .errors import (
    AlreadyReleased,
    ApprovalRequired,
    Conflict,
    GatepassInUse,
    NotFound,
    ReleaseRejected,
)
from .logs import json_log
from .security import find_manager_by_pin
from .status import RELEASE_DELIVERED, bill_status, release_state
from .validation import DriverIdType, GatepassId, Last4, Phone

RELEASE_SELF = "SELF"
RELEASE_TRANSPORTER = "TRANSPORTER"

APPROVAL_NOT_NEEDED = "NOT_REQUIRED"
APPROVAL_MANAGER_PIN = "MANAGER_PIN"
APPROVAL_CUSTOMER_OTP = "CUSTOMER_OTP"


class SelfReleaseIn(BaseModel):
    gatepass_id: GatepassId
    receiver_name: str = Field(min_length=1, max_length=120)
    receiver_phone: Phone
    dispatcher_id: Optional[str] = None
    signature_ref: Optional[str] = None
    photo_ref: Optional[str] = None
    manager_pin: Optional[str] = None
    otp_verified: bool = False


class TransporterReleaseIn(BaseModel):
    gatepass_id: GatepassId
    transporter_name: str = Field(min_length=1, max_length=120)
    lr_no: Optional[str] = Field(default=None, max_length=60)
    vehicle_no: str = Field(min_length=4, max_length=20)
    driver_name: str = Field(min_length=1, max_length=120)
    driver_phone: Phone
    driver_id_type: Optional[DriverIdType] = None
    driver_id_last4: Optional[Last4] = None
    pkg_count: Optional[int] = Field(default=None, ge=1)
    gross_weight: Optional[Decimal] = Field(default=None, ge=0)
    net_weight: Optional[Decimal] = Field(default=None, ge=0)
    dispatcher_id: Optional[str] = None
    manager_pin: Optional[str] = None
    otp_verified: bool = False


class DeliveryConfirmIn(BaseModel):
    pod_reference: str = Field(min_length=1, max_length=500)
    confirmed_by: Optional[str] = None


class Approval(NamedTuple):
    """Outcome of PIN checks done before the bill lock is taken."""

    manager_id: Optional[str] = None
    pin_supplied: bool = False


def resolve_approval(manager_pin: Optional[str], connect=None) -> Approval:
    # bcrypt is slow on purpose; keep it outside the bill lock.
    pin = (manager_pin or "").strip()
    if not pin:
        return Approval()
    with (connect or db.get_conn)() as conn:
        with conn.cursor() as cur:
            manager = find_manager_by_pin(cur, pin)
    return Approval(manager_id=str(manager["id"]) if manager else None, pin_supplied=True)


def _unique_violation_to_rejection(exc: pg_errors.UniqueViolation, bill_no: str, gatepass_id: str) -> ReleaseRejected:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if constraint in {"gatepass_pkey", "release_self_gatepass_id_key", "release_transporter_gatepass_id_key"}:
        return GatepassInUse(f"gatepass {gatepass_id} is already used")
    return AlreadyReleased(f"bill {bill_no} is already released")


class ReleaseHandle:
    def __init__(self, bill_no: str, bill: dict, status: dict, conn_cm, conn, cur):
        self.bill_no = bill_no
        self.bill = bill
        self.status = status
        self._conn_cm = conn_cm
        self._conn = conn
        self._cur = cur
        self._open = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._open:
            self.abort()
        return False

    def _finish(self, *, rollback: bool) -> None:
        if not self._open:
            return
        self._open = False
        try:
            if rollback:
                self._conn.rollback()
        finally:
            # Leaving get_conn() commits whatever is still pending and returns
            # the connection to the pool.
            self._conn_cm.__exit__(None, None, None)

    def abort(self) -> None:
        self._finish(rollback=True)

    def _reject(self, err: ReleaseRejected):
        self.abort()
        json_log("warning", "release.rejected", bill_no=self.bill_no, reason=err.reason, detail=err.detail)
        raise err

    def _approval_method(self, approval: Approval, otp_verified: bool) -> str:
        if self.status["remaining_due"] <= 0:
            return APPROVAL_NOT_NEEDED
        if approval.manager_id:
            return APPROVAL_MANAGER_PIN
        if approval.pin_supplied:
            self._reject(ReleaseRejected("invalid manager PIN", reason="INVALID_MANAGER_PIN"))
        if otp_verified:
            self._cur.execute(
                """
                SELECT id
                FROM customer_otp
                WHERE bill_no = %s
                  AND verified_at IS NOT NULL
                  AND consumed_at IS NULL
                  AND expires_at > now()
                ORDER BY verified_at DESC
                LIMIT 1
                """,
                (self.bill_no,),
            )
            otp = self._cur.fetchone()
            if otp:
                self._cur.execute("UPDATE customer_otp SET consumed_at = now() WHERE id = %s", (otp["id"],))
                return APPROVAL_CUSTOMER_OTP
        self._reject(
            ApprovalRequired(
                f"bill {self.bill_no} has {self.status['remaining_due']} due; manager PIN or customer OTP required"
            )
        )

    def _prepare(self, gatepass_id: str, release_type: str, approval: Approval, otp_verified: bool) -> str:
        if not self._open:
            raise RuntimeError("release handle is closed")
        self._cur.execute("SELECT bill_no FROM gatepass WHERE gatepass_id = %s", (gatepass_id,))
        used = self._cur.fetchone()
        if used:
            self._reject(GatepassInUse(f"gatepass {gatepass_id} is already used by bill {used['bill_no']}"))
        method = self._approval_method(approval, otp_verified)
        self._cur.execute(
            "INSERT INTO gatepass (gatepass_id, bill_no, release_type) VALUES (%s, %s, %s)",
            (gatepass_id, self.bill_no, release_type),
        )
        return method

    def _commit(self, gatepass_id: str, insert) -> dict:
        try:
            row = insert()
        except pg_errors.UniqueViolation as exc:
            self._reject(_unique_violation_to_rejection(exc, self.bill_no, gatepass_id))
        self._finish(rollback=False)
        return row

    def commit_self(self, data: SelfReleaseIn, approval: Approval = Approval()) -> dict:
        def insert():
            method = self._prepare(data.gatepass_id, RELEASE_SELF, approval, data.otp_verified)
            self._cur.execute(
                """
                INSERT INTO release_self
                  (bill_no, gatepass_id, approval_method, approved_by, dispatcher_id,
                   receiver_name, receiver_phone, signature_ref, photo_ref)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING release_id, bill_no, gatepass_id, approval_method, approved_by,
                          dispatcher_id, receiver_name, receiver_phone, released_at
                """,
                (
                    self.bill_no,
                    data.gatepass_id,
                    method,
                    approval.manager_id if method == APPROVAL_MANAGER_PIN else None,
                    data.dispatcher_id,
                    data.receiver_name.strip(),
                    data.receiver_phone,
                    data.signature_ref,
                    data.photo_ref,
                ),
            )
            return self._cur.fetchone()

        row = self._commit(data.gatepass_id, insert)
        json_log("info", "release.committed", bill_no=self.bill_no, release_type=RELEASE_SELF, gatepass_id=data.gatepass_id)
        return {**row, "release_type": RELEASE_SELF, "release_state": release_state(row, None)}

    def commit_transporter(self, data: TransporterReleaseIn, approval: Approval = Approval()) -> dict:
        def insert():
            method = self._prepare(data.gatepass_id, RELEASE_TRANSPORTER, approval, data.otp_verified)
            self._cur.execute(
                """
                INSERT INTO release_transporter
                  (bill_no, gatepass_id, approval_method, approved_by, dispatcher_id,
                   transporter_name, lr_no, vehicle_no, driver_name, driver_phone,
                   driver_id_type, driver_id_last4, pkg_count, gross_weight, net_weight)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING release_id, bill_no, gatepass_id, approval_method, approved_by,
                          dispatcher_id, transporter_name, lr_no, vehicle_no, driver_name,
                          pickup_at, delivered_at
                """,
                (
                    self.bill_no,
                    data.gatepass_id,
                    method,
                    approval.manager_id if method == APPROVAL_MANAGER_PIN else None,
                    data.dispatcher_id,
                    data.transporter_name.strip(),
                    data.lr_no,
                    data.vehicle_no.strip().upper(),
                    data.driver_name.strip(),
                    data.driver_phone,
                    data.driver_id_type,
                    data.driver_id_last4,
                    data.pkg_count,
                    data.gross_weight,
                    data.net_weight,
                ),
            )
            return self._cur.fetchone()

        row = self._commit(data.gatepass_id, insert)
        json_log(
            "info",
            "release.committed",
            bill_no=self.bill_no,
            release_type=RELEASE_TRANSPORTER,
            gatepass_id=data.gatepass_id,
        )
        return {**row, "release_type": RELEASE_TRANSPORTER, "release_state": release_state(None, row)}


class ReleaseCoordinator:
    def __init__(self, connect=None, lock_timeout_ms: Optional[int] = None):
        self._connect = connect
        self.lock_timeout_ms = lock_timeout_ms

    def begin_release(self, bill_no: str) -> ReleaseHandle:
        connect = self._connect or db.get_conn
        timeout_ms = self.lock_timeout_ms if self.lock_timeout_ms is not None else settings.release_lock_timeout_ms
        conn_cm = connect()
        conn = conn_cm.__enter__()
        try:
            db.set_lock_timeout(conn, timeout_ms)
            cur = conn.cursor()
            try:
                cur.execute(
                    """
                    SELECT bill_no, bill_date, party_name, amount
                    FROM bill
                    WHERE bill_no = %s
                    FOR UPDATE
                    """,
                    (bill_no,),
                )
            except pg_errors.LockNotAvailable:
                raise ReleaseRejected(
                    f"bill {bill_no} is being released by another request",
                    reason="RELEASE_IN_PROGRESS",
                ) from None
            bill = cur.fetchone()
            if not bill:
                raise NotFound(f"bill {bill_no} not found")

            cur.execute("SELECT gatepass_id, release_type FROM gatepass WHERE bill_no = %s", (bill_no,))
            existing = cur.fetchone()
            if existing:
                raise AlreadyReleased(
                    f"bill {bill_no} already released ({existing['release_type']}, gatepass {existing['gatepass_id']})"
                )

            cur.execute(
                "SELECT COALESCE(SUM(amount), 0) AS receipt_total FROM receipt WHERE bill_no = %s",
                (bill_no,),
            )
            total = (cur.fetchone() or {}).get("receipt_total")
        except BaseException:
            exc = sys.exc_info()[1]
            try:
                conn.rollback()
            finally:
                conn_cm.__exit__(None, None, None)
            if isinstance(exc, ReleaseRejected):
                json_log("warning", "release.rejected", bill_no=bill_no, reason=exc.reason, detail=exc.detail)
            raise
        return ReleaseHandle(bill_no, bill, bill_status(bill["amount"], total), conn_cm, conn, cur)

    def commit_release(self, handle: ReleaseHandle, data, approval: Approval = Approval()) -> dict:
        if isinstance(data, TransporterReleaseIn):
            return handle.commit_transporter(data, approval)
        return handle.commit_self(data, approval)

    def abort(self, handle: ReleaseHandle) -> None:
        handle.abort()


coordinator = ReleaseCoordinator()


def release_self(bill_no: str, data: SelfReleaseIn, coord: Optional[ReleaseCoordinator] = None) -> dict:
    coord = coord or coordinator
    approval = resolve_approval(data.manager_pin)
    with coord.begin_release(bill_no) as handle:
        return coord.commit_release(handle, data, approval)


def release_transporter(bill_no: str, data: TransporterReleaseIn, coord: Optional[ReleaseCoordinator] = None) -> dict:
    coord = coord or coordinator
    approval = resolve_approval(data.manager_pin)
    with coord.begin_release(bill_no) as handle:
        return coord.commit_release(handle, data, approval)


def confirm_delivery(bill_no: str, data: DeliveryConfirmIn) -> dict:
    with db.get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT bill_no, delivered_at FROM release_transporter WHERE bill_no = %s FOR UPDATE",
                (bill_no,),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound(f"no transporter release for bill {bill_no}")
            if row.get("delivered_at"):
                raise Conflict(f"bill {bill_no} already delivered", reason="ALREADY_DELIVERED")
            cur.execute(
                """
                UPDATE release_transporter
                SET pod_uploaded = true,
                    pod_ref = %s,
                    delivered_at = now(),
                    delivery_confirmed_by = %s
                WHERE bill_no = %s
                RETURNING bill_no, gatepass_id, transporter_name, vehicle_no, pod_ref, delivered_at
                """,
                (data.pod_reference, data.confirmed_by, bill_no),
            )
            out = cur.fetchone()
    json_log("info", "release.delivered", bill_no=bill_no)
    return {**out, "release_state": release_state(None, out)}


def get_release(cur, bill_no: str) -> Optional[dict]:
    cur.execute("SELECT * FROM release_self WHERE bill_no = %s", (bill_no,))
    self_row = cur.fetchone()
    transporter_row = None
    if not self_row:
        cur.execute("SELECT * FROM release_transporter WHERE bill_no = %s", (bill_no,))
        transporter_row = cur.fetchone()
    state = release_state(self_row, transporter_row)
    row = self_row or transporter_row
    if not row:
        return None
    return {
        **row,
        "release_type": RELEASE_SELF if self_row else RELEASE_TRANSPORTER,
        "release_state": state,
    }


def transport_status(cur, day) -> dict:
    """Transporter releases for bills of `day`, with IN_TRANSIT / DELIVERED counts."""
    cur.execute(
        """
        SELECT rt.bill_no, rt.gatepass_id, rt.transporter_name, rt.lr_no, rt.vehicle_no,
               rt.driver_name, rt.driver_phone, rt.pickup_at, rt.pod_ref, rt.delivered_at,
               rt.dispatcher_id, b.party_name, b.bill_date
        FROM release_transporter rt
        JOIN bill b ON b.bill_no = rt.bill_no
        WHERE b.bill_date = %s
        ORDER BY rt.pickup_at DESC
        """,
        (day,),
    )
    transports = [{**r, "release_state": release_state(None, r)} for r in cur.fetchall()]
    delivered = sum(1 for t in transports if t["release_state"] == RELEASE_DELIVERED)
    return {
        "date": day,
        "transports": transports,
        "summary": {
            "total": len(transports),
            "in_transit": len(transports) - delivered,
            "delivered": delivered,
        },
    }
