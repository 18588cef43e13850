from datetime import date
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ..config import settings
from ..db import get_conn
from ..errors import OtpRejected
from ..otp import issue_otp, verify_otp
from ..release import (
    DeliveryConfirmIn,
    SelfReleaseIn,
    TransporterReleaseIn,
    confirm_delivery,
    release_self,
    release_transporter,
    transport_status,
)
from ..validation import Phone

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


class OtpIssueIn(BaseModel):
    phone: Phone


class OtpVerifyIn(BaseModel):
    code: str


@router.post("/bills/{bill_no}/release/self")
def release_bill_self(bill_no: str, data: SelfReleaseIn):
    return {"release": release_self(bill_no, data)}


@router.post("/bills/{bill_no}/release/transporter")
def release_bill_transporter(bill_no: str, data: TransporterReleaseIn):
    return {"release": release_transporter(bill_no, data)}


@router.post("/bills/{bill_no}/delivery")
def confirm_bill_delivery(bill_no: str, data: DeliveryConfirmIn):
    return {"release": confirm_delivery(bill_no, data)}


@router.post("/bills/{bill_no}/otp")
def send_release_otp(bill_no: str, data: OtpIssueIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            otp = issue_otp(cur, bill_no, data.phone, settings.otp_expiry_minutes)
    return {"otp": otp}


@router.post("/bills/{bill_no}/otp/verify")
def verify_release_otp(bill_no: str, data: OtpVerifyIn):
    rejected = None
    with get_conn() as conn:
        with conn.cursor() as cur:
            try:
                verified = verify_otp(cur, bill_no, data.code)
            except OtpRejected as ex:
                # Commit the attempt counter before reporting the failure.
                rejected = ex
    if rejected is not None:
        raise rejected
    return {"otp": verified}


@router.get("/transport")
def get_transport_status(day: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return transport_status(cur, day or date.today())
