"""
Tally -> store sync cycle.

One cycle: fetch bills, upsert; fetch receipts, upsert; auto-map. Each write
phase is its own transaction, so a receipts failure never rolls back bills
that already landed. Cycles are single-flight: a trigger that arrives while a
cycle is running is dropped, not queued.
"""

import threading
import traceback
import sys
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

import psycopg

from .config import settings
from .db import get_conn
from .errors import DispatchError, MalformedRecord, TransactionFailure
from .logs import json_log
from .mapping import map_unmapped
from .tally.selector import SourceManager, source_manager
from .vouchers import RawVoucher, parse_bill, parse_receipt


def upsert_bills(cur, bills: List[dict]) -> int:
    n = 0
    for b in bills:
        cur.execute(
            """
            INSERT INTO bill (bill_no, bill_date, party_name, amount, last_sync_ts)
            VALUES (%s, %s, %s, %s, now())
            ON CONFLICT (bill_no) DO UPDATE
            SET bill_date = EXCLUDED.bill_date,
                party_name = EXCLUDED.party_name,
                amount = EXCLUDED.amount,
                last_sync_ts = now()
            """,
            (b["bill_no"], b["bill_date"], b["party_name"], b["amount"]),
        )
        n += 1
    return n


def upsert_receipts(cur, receipts: List[dict]) -> int:
    # bill_no (the mapping link) is not in the update list: re-syncing a receipt
    # must not unmap it.
    n = 0
    for r in receipts:
        cur.execute(
            """
            INSERT INTO receipt
              (receipt_no, receipt_date, party_name, amount, mode, ref_text, bill_reference, last_sync_ts)
            VALUES (%s, %s, %s, %s, %s, %s, %s, now())
            ON CONFLICT (receipt_no) DO UPDATE
            SET receipt_date = EXCLUDED.receipt_date,
                party_name = EXCLUDED.party_name,
                amount = EXCLUDED.amount,
                mode = EXCLUDED.mode,
                ref_text = EXCLUDED.ref_text,
                bill_reference = EXCLUDED.bill_reference,
                last_sync_ts = now()
            """,
            (
                r["receipt_no"],
                r["receipt_date"],
                r["party_name"],
                r["amount"],
                r["mode"],
                r["ref_text"],
                r["bill_reference"],
            ),
        )
        n += 1
    return n


def _parse_batch(
    raws: List[RawVoucher],
    parser: Callable[..., dict],
    *,
    kind: str,
    today: date,
    since: date,
    date_policy: str,
) -> List[dict]:
    out = []
    for raw in raws:
        try:
            rec = parser(raw, today=today, date_policy=date_policy)
        except MalformedRecord as exc:
            json_log("warning", "sync.record.malformed", kind=kind, error=exc.detail)
            continue
        if rec.pop("date_defaulted"):
            json_log(
                "warning",
                "sync.date.defaulted",
                kind=kind,
                voucher_number=str(raw.voucher_number),
                raw_date=raw.date,
                used=today,
            )
        rec_date = rec.get("bill_date") or rec.get("receipt_date")
        if rec_date < since:
            json_log(
                "debug",
                "sync.record.out_of_window",
                kind=kind,
                voucher_number=str(raw.voucher_number),
                date=rec_date,
                since=since,
            )
            continue
        out.append(rec)
    return out


class IngestionPipeline:
    def __init__(
        self,
        sources: SourceManager = source_manager,
        connect=get_conn,
        cfg=settings,
        clock: Callable[[], date] = date.today,
    ):
        self.sources = sources
        self.connect = connect
        self.cfg = cfg
        self.clock = clock
        self._single_flight = threading.Lock()
        self.last_started_at: Optional[datetime] = None
        self.last_finished_at: Optional[datetime] = None
        self.last_result: Optional[dict] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._single_flight.locked()

    def _write(self, phase: str, fn, *args) -> int:
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    return fn(cur, *args)
        except psycopg.Error as exc:
            raise TransactionFailure(f"{phase} phase rolled back: {exc}", phase=phase) from exc

    def _run(self) -> dict:
        source = self.sources.current()
        today = self.clock()
        since = today - timedelta(days=self.cfg.sync_window_days)
        policy = self.cfg.unparsable_date_policy

        bills = _parse_batch(
            source.fetch_bills(since, today),
            parse_bill,
            kind="bill",
            today=today,
            since=since,
            date_policy=policy,
        )
        bills_synced = self._write("bills", upsert_bills, bills)

        receipts = _parse_batch(
            source.fetch_receipts(since, today),
            parse_receipt,
            kind="receipt",
            today=today,
            since=since,
            date_policy=policy,
        )
        receipts_synced = self._write("receipts", upsert_receipts, receipts)

        mapped_count = self._write("mapping", map_unmapped)
        return {
            "bills_synced": bills_synced,
            "receipts_synced": receipts_synced,
            "mapped_count": mapped_count,
            "method": source.method,
        }

    def run_cycle(self) -> Optional[dict]:
        """
        Run one cycle now. Returns None when another cycle holds the guard.

        Raises SourceUnavailable / TransactionFailure on a failed cycle; the
        guard is released either way.
        """
        if not self._single_flight.acquire(blocking=False):
            json_log("info", "sync.cycle.skipped", reason="cycle already running")
            return None
        try:
            self.last_started_at = datetime.now(timezone.utc)
            json_log("info", "sync.cycle.start", method=self.sources.method)
            try:
                result = self._run()
            except DispatchError as exc:
                self.last_error = exc.detail
                json_log("error", "sync.cycle.failed", reason=exc.reason, error=exc.detail)
                raise
            except Exception as exc:
                self.last_error = str(exc)
                json_log("error", "sync.cycle.failed", reason="unexpected", error=str(exc))
                raise
            self.last_result = result
            self.last_error = None
            json_log("info", "sync.cycle.done", **result)
            return result
        finally:
            self.last_finished_at = datetime.now(timezone.utc)
            self._single_flight.release()

    def trigger(self) -> Optional[dict]:
        """Scheduler entry point: like run_cycle but never raises."""
        try:
            return self.run_cycle()
        except DispatchError:
            return None
        except Exception:
            # Never let a bad cycle take the scheduler down; the next tick retries.
            traceback.print_exc(file=sys.stderr)
            return None

    def map_now(self) -> int:
        return self._write("mapping", map_unmapped)

    def status(self) -> dict:
        return {
            "connection_method": self.sources.method,
            "source": self.sources.describe(),
            "is_running": self.is_running,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "sync_interval_seconds": self.cfg.sync_interval_seconds,
            "sync_window_days": self.cfg.sync_window_days,
            "odbc_dsn": self.cfg.tally_dsn,
            "xml_api_url": self.cfg.tally_xml_url,
        }


class SyncScheduler(threading.Thread):
    """Fixed-cadence ticker that runs inside the API process."""

    def __init__(self, pipeline: IngestionPipeline, interval_seconds: float):
        super().__init__(name="tally-sync", daemon=True)
        self.pipeline = pipeline
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._stop_event = threading.Event()

    def run(self):
        self.pipeline.trigger()
        while not self._stop_event.wait(self.interval_seconds):
            self.pipeline.trigger()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        self.join(timeout)


class SchedulerControl:
    """
    Start/stop handle for the in-process scheduler.

    Threads cannot be restarted, so every start builds a fresh `SyncScheduler`.
    Stopping lets a cycle already in flight finish on its own.
    """

    def __init__(self, pipeline: IngestionPipeline, interval_seconds: float):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._thread: Optional[SyncScheduler] = None
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def start(self) -> bool:
        with self._lock:
            if self.running:
                return False
            self._thread = SyncScheduler(self.pipeline, self.interval_seconds)
            self._thread.start()
            self.started_at = datetime.now(timezone.utc)
        json_log("info", "sync.scheduler.started", interval_seconds=self.interval_seconds)
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            thread, self._thread = self._thread, None
            self.started_at = None
        if thread is None or not thread.is_alive():
            return False
        thread.stop(timeout)
        json_log("info", "sync.scheduler.stopped")
        return True

    def status(self) -> dict:
        return {
            "running": self.running,
            "started_at": self.started_at,
            "interval_seconds": self.interval_seconds,
        }


def sync_stats(cur) -> dict:
    cur.execute(
        """
        SELECT
          (SELECT count(*) FROM bill) AS total_bills,
          (SELECT count(*) FROM bill WHERE last_sync_ts > now() - interval '1 hour') AS bills_synced_last_hour,
          (SELECT count(*) FROM receipt) AS total_receipts,
          (SELECT count(*) FROM receipt WHERE last_sync_ts > now() - interval '1 hour') AS receipts_synced_last_hour,
          (SELECT count(*) FROM receipt WHERE bill_no IS NOT NULL) AS mapped_receipts,
          (SELECT count(*) FROM receipt WHERE bill_no IS NULL) AS unmapped_receipts,
          (SELECT max(last_sync_ts) FROM bill) AS last_bill_sync,
          (SELECT max(last_sync_ts) FROM receipt) AS last_receipt_sync
        """
    )
    return cur.fetchone() or {}


def recent_sync_log(cur, limit: int = 50) -> List[dict]:
    cur.execute(
        """
        SELECT * FROM (
          SELECT 'BILL' AS kind, bill_no AS voucher_no, party_name, amount, last_sync_ts
          FROM bill
          UNION ALL
          SELECT 'RECEIPT' AS kind, receipt_no AS voucher_no, party_name, amount, last_sync_ts
          FROM receipt
        ) t
        ORDER BY last_sync_ts DESC NULLS LAST, voucher_no
        LIMIT %s
        """,
        (limit,),
    )
    return cur.fetchall()


pipeline = IngestionPipeline()
scheduler = SchedulerControl(pipeline, settings.sync_interval_seconds)
