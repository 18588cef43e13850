"""
Tabular channel: Tally's ODBC server queried with its `$Field` SQL dialect.

The dialect has no usable date predicates, so fetches are bounded by row count
(`TOP n`, newest first); the pipeline trims to the sync window afterwards.
"""

from datetime import date
from typing import List, Optional

from ..errors import SourceUnavailable
from ..logs import json_log
from ..vouchers import RawVoucher
from .base import METHOD_TABULAR, RECEIPT_VOUCHER_TYPE, SALES_VOUCHER_TYPE, VoucherSource

PROBE_SQL = "SELECT TOP 1 $Name FROM Ledger"

_VOUCHER_SQL = """
    SELECT TOP {limit}
      $VoucherNumber, $Date, $PartyLedgerName, $Amount, $Reference, $Narration, $VoucherTypeName
    FROM Voucher
    WHERE $VoucherTypeName = '{voucher_type}'
    ORDER BY $Date DESC
"""


def _driver():
    # Lazy import so hosts without the Tally ODBC driver (or pyodbc) still run
    # the XML channel.
    try:
        import pyodbc
    except ImportError as exc:
        raise SourceUnavailable("pyodbc is not installed (pip install .[odbc])") from exc
    return pyodbc


def connection_strings(dsn: str, host: str, port: int) -> List[str]:
    """Variants tried in order; the first that answers the probe query wins."""
    candidates = [
        f"DSN={dsn};",
        f"DRIVER={{Tally ODBC Driver}};SERVER={host};PORT={port};",
        f"DRIVER={{Tally 9.0 ODBC Driver}};SERVER={host};PORT={port};",
        "DSN=TallyPrime;",
    ]
    out = []
    for c in candidates:
        if c not in out:
            out.append(c)
    return out


def _row_value(row: dict, name: str):
    # Drivers disagree on whether the `$` prefix survives in column names.
    for key in (name, f"${name}", name.lower(), f"${name}".lower()):
        if key in row:
            return row[key]
    return None


class TabularSource(VoucherSource):
    method = METHOD_TABULAR

    def __init__(self, conn_str: str, *, fetch_timeout: int = 30, max_records: int = 1000):
        self.conn_str = conn_str
        self.fetch_timeout = fetch_timeout
        self.max_records = max_records

    @classmethod
    def probe(cls, *, dsn: str, host: str, port: int, probe_timeout: int = 5, **kwargs) -> Optional["TabularSource"]:
        try:
            odbc = _driver()
        except SourceUnavailable as exc:
            json_log("info", "tally.probe", method=METHOD_TABULAR, ok=False, error=exc.detail)
            return None
        for conn_str in connection_strings(dsn, host, port):
            try:
                conn = odbc.connect(conn_str, timeout=probe_timeout, autocommit=True)
                try:
                    cur = conn.cursor()
                    cur.execute(PROBE_SQL)
                    cur.fetchone()
                finally:
                    conn.close()
            except odbc.Error as exc:
                json_log("info", "tally.probe", method=METHOD_TABULAR, conn_str=conn_str, ok=False, error=str(exc))
                continue
            json_log("info", "tally.probe", method=METHOD_TABULAR, conn_str=conn_str, ok=True)
            return cls(conn_str, **kwargs)
        return None

    def _query(self, sql: str) -> List[dict]:
        odbc = _driver()
        try:
            conn = odbc.connect(self.conn_str, timeout=self.fetch_timeout, autocommit=True)
            try:
                # Connection.timeout is the per-statement timeout in pyodbc.
                conn.timeout = self.fetch_timeout
                cur = conn.cursor()
                cur.execute(sql)
                cols = [c[0] for c in (cur.description or [])]
                return [dict(zip(cols, r)) for r in cur.fetchall()]
            finally:
                conn.close()
        except odbc.Error as exc:
            raise SourceUnavailable(f"ODBC query failed: {exc}") from exc

    def _fetch(self, voucher_type: str) -> List[RawVoucher]:
        rows = self._query(_VOUCHER_SQL.format(limit=int(self.max_records), voucher_type=voucher_type))
        return [
            RawVoucher(
                voucher_number=_row_value(r, "VoucherNumber"),
                date=_row_value(r, "Date"),
                party_name=_row_value(r, "PartyLedgerName"),
                amount=_row_value(r, "Amount"),
                narration=_row_value(r, "Narration"),
                reference=_row_value(r, "Reference"),
                voucher_type=_row_value(r, "VoucherTypeName"),
            )
            for r in rows
        ]

    def fetch_bills(self, since: date, until: date) -> List[RawVoucher]:
        return self._fetch(SALES_VOUCHER_TYPE)

    def fetch_receipts(self, since: date, until: date) -> List[RawVoucher]:
        return self._fetch(RECEIPT_VOUCHER_TYPE)

    def ping(self) -> bool:
        try:
            self._query(PROBE_SQL)
        except SourceUnavailable as exc:
            json_log("info", "tally.probe", method=METHOD_TABULAR, conn_str=self.conn_str, ok=False, error=exc.detail)
            return False
        return True

    def describe(self) -> dict:
        return {"method": self.method, "conn_str": self.conn_str}
