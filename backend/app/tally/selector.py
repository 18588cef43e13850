"""
Picks how to talk to Tally.

`probe_source()` tries the tabular channel first, then the document channel.
When both answer, the hybrid source reads through ODBC and falls back to XML
per fetch. The chosen source is held by `SourceManager` until someone asks
for a re-probe.
"""

import threading
from datetime import date
from typing import Callable, List, Optional, Tuple

from ..config import settings
from ..errors import SourceUnavailable
from ..logs import json_log
from ..vouchers import RawVoucher
from .base import METHOD_DOCUMENT, METHOD_HYBRID, METHOD_NONE, METHOD_TABULAR, VoucherSource
from .odbc import TabularSource
from .xml_gateway import DocumentSource


class HybridSource(VoucherSource):
    method = METHOD_HYBRID

    def __init__(self, tabular: VoucherSource, document: VoucherSource):
        self.tabular = tabular
        self.document = document

    def _with_fallback(self, name: str, since: date, until: date) -> List[RawVoucher]:
        try:
            return getattr(self.tabular, name)(since, until)
        except SourceUnavailable as exc:
            json_log("warning", "tally.fetch.fallback", fetch=name, error=exc.detail)
            return getattr(self.document, name)(since, until)

    def fetch_bills(self, since: date, until: date) -> List[RawVoucher]:
        return self._with_fallback("fetch_bills", since, until)

    def fetch_receipts(self, since: date, until: date) -> List[RawVoucher]:
        return self._with_fallback("fetch_receipts", since, until)

    def ping(self) -> bool:
        return self.tabular.ping() or self.document.ping()

    def describe(self) -> dict:
        return {
            "method": self.method,
            "tabular": self.tabular.describe(),
            "document": self.document.describe(),
        }


def probe_source(cfg=None) -> Tuple[str, Optional[VoucherSource]]:
    cfg = cfg or settings
    tabular = TabularSource.probe(
        dsn=cfg.tally_dsn,
        host=cfg.tally_host,
        port=cfg.tally_port,
        probe_timeout=cfg.probe_timeout_seconds,
        fetch_timeout=cfg.fetch_timeout_seconds,
        max_records=cfg.sync_max_records,
    )
    document = DocumentSource(
        cfg.tally_xml_url,
        company=cfg.tally_company,
        probe_timeout=cfg.probe_timeout_seconds,
        fetch_timeout=cfg.fetch_timeout_seconds,
    )
    document_ok = document.ping()

    if tabular and document_ok:
        return METHOD_HYBRID, HybridSource(tabular, document)
    if tabular:
        return METHOD_TABULAR, tabular
    if document_ok:
        return METHOD_DOCUMENT, document
    return METHOD_NONE, None


class SourceManager:
    def __init__(self, prober: Callable[[], Tuple[str, Optional[VoucherSource]]] = probe_source):
        self._prober = prober
        self._lock = threading.Lock()
        self._method = METHOD_NONE
        self._source: Optional[VoucherSource] = None
        self._probed = False

    @property
    def method(self) -> str:
        return self._method

    def probe(self) -> str:
        method, source = self._prober()
        with self._lock:
            self._method = method
            self._source = source
            self._probed = True
        json_log("info" if source else "warning", "tally.probe.selected", method=method)
        return method

    def current(self) -> VoucherSource:
        """Chosen source; probes again only while nothing usable has been found."""
        with self._lock:
            source = self._source
        if source is None:
            self.probe()
            with self._lock:
                source = self._source
        if source is None:
            raise SourceUnavailable("neither the ODBC nor the XML channel to Tally is reachable")
        return source

    def describe(self) -> dict:
        with self._lock:
            out = {"method": self._method, "probed": self._probed}
            if self._source is not None:
                out["source"] = self._source.describe()
        return out


source_manager = SourceManager()
