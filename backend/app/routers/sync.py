from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional

from ..db import get_conn
from ..ingestion import pipeline, recent_sync_log, scheduler, sync_stats
from ..mapping import map_receipt, unmatched_receipts
from ..tally.selector import source_manager
from ..validation import BillNo

router = APIRouter(prefix="/sync", tags=["sync"])


class ReceiptMapIn(BaseModel):
    bill_no: BillNo
    mapped_by: Optional[str] = None


@router.get("/status")
def sync_status():
    return {**pipeline.status(), "scheduler": scheduler.status()}


@router.get("/stats")
def get_sync_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"stats": sync_stats(cur), "sync": pipeline.status()}


@router.post("/trigger")
def trigger_sync():
    # Same single-flight entry point as the scheduler; a busy pipeline is not an error.
    result = pipeline.run_cycle()
    if result is None:
        return JSONResponse(status_code=202, content={"status": "skipped", "detail": "sync already running"})
    return {"status": "ok", "result": result}


@router.post("/probe")
def reprobe_source():
    method = source_manager.probe()
    return {"connection_method": method, "source": source_manager.describe()}


@router.post("/map")
def trigger_mapping():
    return {"mapped_count": pipeline.map_now()}


@router.get("/receipts/unmatched")
def list_unmatched_receipts(limit: int = 100):
    limit = max(1, min(int(limit or 100), 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"receipts": unmatched_receipts(cur, limit)}


@router.post("/receipts/{receipt_no}/map")
def map_receipt_manually(receipt_no: str, data: ReceiptMapIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"receipt": map_receipt(cur, receipt_no, data.bill_no, data.mapped_by)}


@router.get("/log")
def sync_log(limit: int = 50):
    limit = max(1, min(int(limit or 50), 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"entries": recent_sync_log(cur, limit)}


@router.post("/scheduler/start")
def start_scheduler():
    started = scheduler.start()
    return {"status": "started" if started else "already_running", "scheduler": scheduler.status()}


@router.post("/scheduler/stop")
def stop_scheduler():
    # Does not wait: a cycle in flight finishes on its own thread.
    stopped = scheduler.stop(timeout=0)
    return {"status": "stopped" if stopped else "not_running", "scheduler": scheduler.status()}
