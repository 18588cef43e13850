import urllib.error
from datetime import date
from types import SimpleNamespace

import pytest

from backend.app.errors import SourceUnavailable
from backend.app.tally import odbc as odbc_mod
from backend.app.tally import selector
from backend.app.tally import xml_gateway
from backend.app.tally.odbc import TabularSource, connection_strings
from backend.app.tally.selector import HybridSource, SourceManager, probe_source
from backend.app.tally.xml_gateway import DocumentSource, collection_request, parse_envelope, parse_vouchers
from backend.app.vouchers import RawVoucher

VOUCHERS_XML = """<?xml version="1.0" encoding="utf-8"?>
<ENVELOPE>
 <BODY><DATA><COLLECTION>
  <VOUCHER VCHTYPE="Receipt">
   <DATE>20240310</DATE>
   <VOUCHERTYPENAME>Receipt</VOUCHERTYPENAME>
   <VOUCHERNUMBER>R-1</VOUCHERNUMBER>
   <PARTYLEDGERNAME>Acme &#4;Traders</PARTYLEDGERNAME>
   <AMOUNT>-300.00</AMOUNT>
   <NARRATION>cash against BILL:S-2</NARRATION>
  </VOUCHER>
  <VOUCHER VCHTYPE="Sales">
   <DATE>20240301</DATE>
   <VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>
   <VOUCHERNUMBER>S-1</VOUCHERNUMBER>
   <PARTYLEDGERNAME>Acme Traders</PARTYLEDGERNAME>
   <AMOUNT>1000.00</AMOUNT>
  </VOUCHER>
 </COLLECTION></DATA></BODY>
</ENVELOPE>
"""


def test_collection_request_carries_window_and_company():
    xml = collection_request(
        "Sales Vouchers",
        "Voucher",
        "$VoucherNumber",
        filter_formula='$VoucherTypeName = "Sales"',
        since=date(2024, 3, 1),
        until=date(2024, 3, 20),
        company="A & B Traders",
    )
    assert '<SVFROMDATE TYPE="Date">20240301</SVFROMDATE>' in xml
    assert '<SVTODATE TYPE="Date">20240320</SVTODATE>' in xml
    assert "<SVCURRENTCOMPANY>A &amp; B Traders</SVCURRENTCOMPANY>" in xml
    assert "<FILTER>RowFilter</FILTER>" in xml
    # The request itself must be well-formed XML.
    assert parse_envelope(xml).tag == "ENVELOPE"


def test_parse_vouchers_filters_type_and_strips_bad_char_refs():
    receipts = parse_vouchers(VOUCHERS_XML, "Receipt")
    assert receipts == [
        RawVoucher(
            voucher_number="R-1",
            date="20240310",
            party_name="Acme Traders",
            amount="-300.00",
            narration="cash against BILL:S-2",
            reference=None,
            voucher_type="Receipt",
        )
    ]
    assert [v.voucher_number for v in parse_vouchers(VOUCHERS_XML)] == ["R-1", "S-1"]


def test_parse_vouchers_surfaces_tally_line_errors():
    with pytest.raises(SourceUnavailable):
        parse_vouchers("<ENVELOPE><LINEERROR>Could not find Company</LINEERROR></ENVELOPE>")


def test_parse_envelope_rejects_garbage():
    with pytest.raises(SourceUnavailable):
        parse_envelope("<html><body>Tally.ERP 9 Server is Running")


def test_decode_handles_utf16_responses():
    body = "<ENVELOPE><X>1</X></ENVELOPE>".encode("utf-16")
    assert parse_envelope(xml_gateway._decode(body)).findtext("X") == "1"


def test_document_source_fetch_uses_post(monkeypatch):
    src = DocumentSource("http://tally:9000/", company="Acme")
    sent = []

    def _fake_post(payload, *, timeout):
        sent.append((payload, timeout))
        return VOUCHERS_XML

    monkeypatch.setattr(src, "_post", _fake_post)
    bills = src.fetch_bills(date(2024, 3, 1), date(2024, 3, 20))
    assert [b.voucher_number for b in bills] == ["S-1"]
    payload, timeout = sent[0]
    assert "Sales Vouchers" in payload
    assert timeout == src.fetch_timeout
    assert src.describe() == {"method": "document", "url": "http://tally:9000"}


def test_document_source_maps_transport_errors(monkeypatch):
    def _refused(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(xml_gateway.urllib.request, "urlopen", _refused)
    src = DocumentSource("http://tally:9000")
    with pytest.raises(SourceUnavailable):
        src.fetch_receipts(date(2024, 3, 1), date(2024, 3, 20))
    assert src.ping() is False


def test_document_ping_accepts_envelope(monkeypatch):
    src = DocumentSource("http://tally:9000")
    monkeypatch.setattr(src, "_post", lambda payload, *, timeout: "<ENVELOPE><BODY/></ENVELOPE>")
    assert src.ping() is True


def test_connection_strings_are_deduplicated():
    assert connection_strings("TallyPrime", "localhost", 9000) == [
        "DSN=TallyPrime;",
        "DRIVER={Tally ODBC Driver};SERVER=localhost;PORT=9000;",
        "DRIVER={Tally 9.0 ODBC Driver};SERVER=localhost;PORT=9000;",
    ]
    assert len(connection_strings("Books", "localhost", 9000)) == 4


class _OdbcError(Exception):
    pass


class _FakeOdbcCursor:
    def __init__(self, description, rows):
        self.description = description
        self._rows = rows
        self.executed = []

    def execute(self, sql):
        self.executed.append(sql)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class _FakeOdbcConn:
    def __init__(self, cursor):
        self._cursor = cursor
        self.timeout = 0
        self.closed = False

    def cursor(self):
        return self._cursor

    def close(self):
        self.closed = True


def _fake_driver(accept, cursor):
    tried = []

    def connect(conn_str, timeout=None, autocommit=False):
        tried.append(conn_str)
        if conn_str not in accept:
            raise _OdbcError(f"[IM002] data source not found: {conn_str}")
        return _FakeOdbcConn(cursor)

    return SimpleNamespace(Error=_OdbcError, connect=connect), tried


def test_tabular_probe_walks_connection_strings(monkeypatch):
    cursor = _FakeOdbcCursor([("$Name",)], [("Cash",)])
    accepted = "DRIVER={Tally ODBC Driver};SERVER=localhost;PORT=9000;"
    driver, tried = _fake_driver({accepted}, cursor)
    monkeypatch.setattr(odbc_mod, "_driver", lambda: driver)

    src = TabularSource.probe(dsn="TallyPrime", host="localhost", port=9000, max_records=50)
    assert src is not None
    assert src.conn_str == accepted
    assert src.max_records == 50
    assert tried[0] == "DSN=TallyPrime;"


def test_tabular_probe_without_driver_returns_none(monkeypatch):
    def _missing():
        raise SourceUnavailable("pyodbc is not installed")

    monkeypatch.setattr(odbc_mod, "_driver", _missing)
    assert TabularSource.probe(dsn="TallyPrime", host="localhost", port=9000) is None


def test_tabular_fetch_maps_dollar_columns(monkeypatch):
    cols = [("$VoucherNumber",), ("$Date",), ("$PartyLedgerName",), ("$Amount",), ("$Reference",), ("$Narration",), ("$VoucherTypeName",)]
    rows = [("R-1", date(2024, 3, 10), "Acme", -300.0, None, "upi", "Receipt")]
    cursor = _FakeOdbcCursor(cols, rows)
    driver, _ = _fake_driver({"DSN=TallyPrime;"}, cursor)
    monkeypatch.setattr(odbc_mod, "_driver", lambda: driver)

    src = TabularSource("DSN=TallyPrime;", max_records=25)
    out = src.fetch_receipts(date(2024, 3, 1), date(2024, 3, 20))
    assert out == [RawVoucher("R-1", date(2024, 3, 10), "Acme", -300.0, "upi", None, "Receipt")]
    assert "TOP 25" in cursor.executed[0]
    assert "'Receipt'" in cursor.executed[0]


def test_tabular_fetch_maps_driver_errors(monkeypatch):
    driver, _ = _fake_driver(set(), _FakeOdbcCursor([], []))
    monkeypatch.setattr(odbc_mod, "_driver", lambda: driver)
    with pytest.raises(SourceUnavailable):
        TabularSource("DSN=TallyPrime;").fetch_bills(date(2024, 3, 1), date(2024, 3, 20))


def test_tabular_ping_reports_driver_failures(monkeypatch):
    cursor = _FakeOdbcCursor([("$Name",)], [("Cash",)])
    driver, _ = _fake_driver({"DSN=TallyPrime;"}, cursor)
    monkeypatch.setattr(odbc_mod, "_driver", lambda: driver)

    assert TabularSource("DSN=TallyPrime;").ping() is True
    assert cursor.executed == [odbc_mod.PROBE_SQL]
    assert TabularSource("DSN=Gone;").ping() is False


class _ListSource:
    def __init__(self, method, vouchers=None, error=None, alive=True):
        self.method = method
        self.vouchers = vouchers or []
        self.error = error
        self.alive = alive

    def fetch_bills(self, since, until):
        if self.error:
            raise self.error
        return list(self.vouchers)

    fetch_receipts = fetch_bills

    def ping(self):
        return self.alive

    def describe(self):
        return {"method": self.method}


def test_hybrid_falls_back_to_document_per_fetch():
    doc_vouchers = [RawVoucher("S-1", "20240301", "Acme", "1000")]
    hybrid = HybridSource(
        _ListSource("tabular", error=SourceUnavailable("odbc timeout")),
        _ListSource("document", doc_vouchers),
    )
    assert hybrid.fetch_bills(date(2024, 3, 1), date(2024, 3, 20)) == doc_vouchers
    assert hybrid.describe()["method"] == "hybrid"


def test_hybrid_prefers_tabular_when_it_answers():
    tab = [RawVoucher("S-9", "20240301", "Acme", "10")]
    hybrid = HybridSource(_ListSource("tabular", tab), _ListSource("document", []))
    assert hybrid.fetch_receipts(date(2024, 3, 1), date(2024, 3, 20)) == tab


def _cfg():
    return SimpleNamespace(
        tally_dsn="TallyPrime",
        tally_host="localhost",
        tally_port=9000,
        probe_timeout_seconds=1,
        fetch_timeout_seconds=2,
        sync_max_records=10,
        tally_xml_url="http://localhost:9000",
        tally_company="",
    )


@pytest.mark.parametrize(
    "tabular_ok,document_ok,expected",
    [
        (True, True, "hybrid"),
        (True, False, "tabular"),
        (False, True, "document"),
        (False, False, "none"),
    ],
)
def test_probe_source_selects_method(monkeypatch, tabular_ok, document_ok, expected):
    tab = TabularSource("DSN=TallyPrime;") if tabular_ok else None
    monkeypatch.setattr(selector.TabularSource, "probe", classmethod(lambda cls, **kw: tab))
    monkeypatch.setattr(selector.DocumentSource, "ping", lambda self: document_ok)

    method, source = probe_source(_cfg())
    assert method == expected
    if expected == "none":
        assert source is None
    else:
        assert source.method == expected


def test_source_manager_reprobes_until_something_answers():
    answers = [("none", None), ("document", _ListSource("document"))]
    calls = []

    def prober():
        calls.append(1)
        return answers.pop(0)

    mgr = SourceManager(prober)
    assert mgr.method == "none"
    with pytest.raises(SourceUnavailable):
        mgr.current()
    src = mgr.current()
    assert src.method == "document"
    assert mgr.method == "document"
    # Once chosen, the source is reused without probing again.
    assert mgr.current() is src
    assert len(calls) == 2


def test_hybrid_ping_answers_if_either_channel_does():
    assert HybridSource(_ListSource("tabular", alive=False), _ListSource("document")).ping() is True
    assert HybridSource(_ListSource("tabular", alive=False), _ListSource("document", alive=False)).ping() is False
