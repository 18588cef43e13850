from datetime import date
from typing import List

from ..vouchers import RawVoucher

METHOD_NONE = "none"
METHOD_TABULAR = "tabular"
METHOD_DOCUMENT = "document"
METHOD_HYBRID = "hybrid"

SALES_VOUCHER_TYPE = "Sales"
RECEIPT_VOUCHER_TYPE = "Receipt"


class VoucherSource:
    """
    One way of reading vouchers out of Tally.

    Implementations raise `SourceUnavailable` for anything transport-related
    (driver missing, connection refused, timeout, garbage response).
    """

    method = METHOD_NONE

    def fetch_bills(self, since: date, until: date) -> List[RawVoucher]:
        raise NotImplementedError

    def fetch_receipts(self, since: date, until: date) -> List[RawVoucher]:
        raise NotImplementedError

    def ping(self) -> bool:
        """Cheap liveness check; False instead of raising."""
        raise NotImplementedError

    def describe(self) -> dict:
        return {"method": self.method}
