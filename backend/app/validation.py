from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror CHECK constraints in `backend/db/migrations/001_init.sql`.
TillAdjustmentType = Annotated[Literal["ADD_TO_TILL", "REMOVE_FROM_TILL"], BeforeValidator(_to_upper_str)]
DriverIdType = Annotated[Literal["AADHAR", "PAN", "LICENSE"], BeforeValidator(_to_upper_str)]
ChequeStatus = Annotated[Literal["PENDING", "DEPOSITED", "CLEARED", "BOUNCED"], BeforeValidator(_to_upper_str)]
UserRole = Annotated[
    Literal["CASHIER", "DISPATCHER", "SECURITY", "MANAGER", "ADMIN"],
    BeforeValidator(_to_upper_str),
]


# Voucher numbers come from Tally as free text; keep them trimmed and bounded.
BillNo = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=64)]

# Gatepass ids are printed on paper slips and typed back in at the gate.
GatepassId = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=3, max_length=40, pattern=r"^[A-Z0-9][A-Z0-9/_-]*$"),
]

Phone = Annotated[str, BeforeValidator(_strip_str), StringConstraints(pattern=r"^\+?[0-9]{10,15}$")]

Last4 = Annotated[str, BeforeValidator(_strip_str), StringConstraints(pattern=r"^[0-9A-Za-z]{4}$")]
