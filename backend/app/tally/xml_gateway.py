"""
Document channel: Tally's XML-over-HTTP gateway (default port 9000).

Requests are TDL collection exports; responses are ENVELOPE documents with one
<VOUCHER> element per voucher.
"""

import re
import socket
import urllib.error
import urllib.request
import xml.etree.ElementTree as ET
from datetime import date
from typing import List, Optional
from xml.sax.saxutils import escape

from ..errors import SourceUnavailable
from ..logs import json_log
from ..vouchers import RawVoucher
from .base import METHOD_DOCUMENT, RECEIPT_VOUCHER_TYPE, SALES_VOUCHER_TYPE, VoucherSource

_BILL_FIELDS = "$VoucherNumber, $Date, $PartyLedgerName, $Amount, $VoucherTypeName"
_RECEIPT_FIELDS = "$VoucherNumber, $Date, $PartyLedgerName, $Amount, $Reference, $Narration, $VoucherTypeName"

# Tally happily emits control-character references (&#4; and friends) that
# XML 1.0 forbids; expat refuses the whole document if they stay.
_INVALID_CHAR_REFS = re.compile(
    r"&#(?:0*(?:[0-8]|1[1-2]|1[4-9]|2[0-9]|3[0-1])|x0*(?:[0-8bBcCeEfF]|1[0-9a-fA-F]));"
)
_XML_DECL = re.compile(r"^\s*<\?xml[^>]*\?>")


def _static_variables(since: Optional[date], until: Optional[date], company: str) -> str:
    parts = ["<SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>"]
    if company:
        parts.append(f"<SVCURRENTCOMPANY>{escape(company)}</SVCURRENTCOMPANY>")
    if since:
        parts.append(f'<SVFROMDATE TYPE="Date">{since.strftime("%Y%m%d")}</SVFROMDATE>')
    if until:
        parts.append(f'<SVTODATE TYPE="Date">{until.strftime("%Y%m%d")}</SVTODATE>')
    return "".join(parts)


def collection_request(
    collection: str,
    object_type: str,
    fetch: str,
    *,
    filter_formula: Optional[str] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
    company: str = "",
    max_records: Optional[int] = None,
) -> str:
    filter_ref = ""
    filter_def = ""
    if filter_formula:
        filter_ref = "<FILTER>RowFilter</FILTER>"
        filter_def = f'<SYSTEM TYPE="Formulae" NAME="RowFilter">{escape(filter_formula)}</SYSTEM>'
    limit = f"<MAXRECORDS>{int(max_records)}</MAXRECORDS>" if max_records else ""
    return (
        "<ENVELOPE>"
        "<HEADER><VERSION>1</VERSION><TALLYREQUEST>Export</TALLYREQUEST>"
        f"<TYPE>Collection</TYPE><ID>{escape(collection)}</ID></HEADER>"
        "<BODY><DESC>"
        f"<STATICVARIABLES>{_static_variables(since, until, company)}</STATICVARIABLES>"
        "<TDL><TDLMESSAGE>"
        f'<COLLECTION NAME="{escape(collection)}">'
        f"<TYPE>{escape(object_type)}</TYPE><FETCH>{fetch}</FETCH>{filter_ref}{limit}"
        "</COLLECTION>"
        f"{filter_def}"
        "</TDLMESSAGE></TDL>"
        "</DESC></BODY>"
        "</ENVELOPE>"
    )


def _decode(body: bytes) -> str:
    if body[:2] in (b"\xff\xfe", b"\xfe\xff"):
        return body.decode("utf-16")
    return body.decode("utf-8", errors="replace")


def parse_envelope(text: str) -> ET.Element:
    cleaned = _XML_DECL.sub("", _INVALID_CHAR_REFS.sub("", text or ""), count=1)
    try:
        return ET.fromstring(cleaned)
    except ET.ParseError as exc:
        raise SourceUnavailable(f"unparseable Tally response: {exc}") from exc


def _line_error(root: ET.Element) -> Optional[str]:
    for tag in ("LINEERROR", "ERROR"):
        el = root.find(f".//{tag}")
        if el is not None and (el.text or "").strip():
            return el.text.strip()
    return None


def parse_vouchers(text: str, voucher_type: Optional[str] = None) -> List[RawVoucher]:
    root = parse_envelope(text)
    err = _line_error(root)
    if err:
        raise SourceUnavailable(f"Tally rejected the request: {err}")
    out = []
    for v in root.iter("VOUCHER"):
        vtype = (v.findtext("VOUCHERTYPENAME") or v.get("VCHTYPE") or "").strip()
        if voucher_type and vtype and vtype != voucher_type:
            continue
        out.append(
            RawVoucher(
                voucher_number=v.findtext("VOUCHERNUMBER"),
                date=v.findtext("DATE"),
                party_name=v.findtext("PARTYLEDGERNAME"),
                amount=v.findtext("AMOUNT"),
                narration=v.findtext("NARRATION"),
                reference=v.findtext("REFERENCE"),
                voucher_type=vtype or None,
            )
        )
    return out


class DocumentSource(VoucherSource):
    method = METHOD_DOCUMENT

    def __init__(
        self,
        base_url: str,
        *,
        company: str = "",
        probe_timeout: int = 5,
        fetch_timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.company = company
        self.probe_timeout = probe_timeout
        self.fetch_timeout = fetch_timeout

    def _post(self, payload: str, *, timeout: int) -> str:
        req = urllib.request.Request(
            self.base_url,
            data=payload.encode("utf-8"),
            headers={"Content-Type": "text/xml; charset=utf-8"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return _decode(resp.read() if resp else b"")
        except urllib.error.HTTPError as exc:
            raise SourceUnavailable(f"Tally gateway returned HTTP {exc.code}") from exc
        except (urllib.error.URLError, socket.timeout, OSError) as exc:
            raise SourceUnavailable(f"Tally gateway unreachable: {exc}") from exc

    def ping(self) -> bool:
        payload = collection_request(
            "Ledger Probe", "Ledger", "$Name", company=self.company, max_records=1
        )
        try:
            root = parse_envelope(self._post(payload, timeout=self.probe_timeout))
        except SourceUnavailable as exc:
            json_log("info", "tally.probe", method=METHOD_DOCUMENT, url=self.base_url, ok=False, error=exc.detail)
            return False
        err = _line_error(root)
        ok = root.tag == "ENVELOPE" and not err
        json_log("info", "tally.probe", method=METHOD_DOCUMENT, url=self.base_url, ok=ok, error=err)
        return ok

    def _fetch(self, collection: str, voucher_type: str, fields: str, since: date, until: date) -> List[RawVoucher]:
        payload = collection_request(
            collection,
            "Voucher",
            fields,
            filter_formula=f'$VoucherTypeName = "{voucher_type}"',
            since=since,
            until=until,
            company=self.company,
        )
        return parse_vouchers(self._post(payload, timeout=self.fetch_timeout), voucher_type)

    def fetch_bills(self, since: date, until: date) -> List[RawVoucher]:
        return self._fetch("Sales Vouchers", SALES_VOUCHER_TYPE, _BILL_FIELDS, since, until)

    def fetch_receipts(self, since: date, until: date) -> List[RawVoucher]:
        return self._fetch("Receipt Vouchers", RECEIPT_VOUCHER_TYPE, _RECEIPT_FIELDS, since, until)

    def describe(self) -> dict:
        return {"method": self.method, "url": self.base_url}
