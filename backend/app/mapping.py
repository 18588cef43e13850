"""
Receipt -> bill auto-mapping.

Receipts are visited oldest first (receipt date, then receipt number). For each
one:

- an explicit bill reference lifted from the narration wins when that bill
  exists; if it does not exist yet the receipt waits for a later pass rather
  than being guessed onto another bill;
- otherwise the oldest bill of the exact same party (bill date, then bill
  number) whose remaining due covers the whole receipt is taken. Receipts are
  never split across bills, so one bigger than every open bill stays unmapped.

Linking is one-way: mapped receipts are never revisited.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional

from .errors import Conflict, NotFound
from .status import bill_status

MAPPED_BY_REFERENCE = "REFERENCE"
MAPPED_BY_FIFO = "FIFO"
MAPPED_MANUALLY = "MANUAL"


class Mapping(NamedTuple):
    receipt_no: str
    bill_no: str
    method: str


def _sort_date(v) -> date:
    return v or date.min


def plan_mappings(receipts: Iterable[dict], bills: Iterable[dict]) -> List[Mapping]:
    """
    Decide links for unmapped receipts against bills.

    `bills` rows need bill_no, bill_date, party_name, amount, receipt_total.
    Remaining due is tracked across the pass, so two receipts never both fill
    the same last 500 of a bill.
    """
    by_no: Dict[str, dict] = {}
    by_party: Dict[str, List[dict]] = {}
    remaining: Dict[str, Decimal] = {}
    for b in bills:
        by_no[b["bill_no"]] = b
        by_party.setdefault(b["party_name"], []).append(b)
        remaining[b["bill_no"]] = bill_status(b.get("amount"), b.get("receipt_total"))["remaining_due"]
    for party_bills in by_party.values():
        party_bills.sort(key=lambda b: (_sort_date(b.get("bill_date")), b["bill_no"]))

    out: List[Mapping] = []
    ordered = sorted(receipts, key=lambda r: (_sort_date(r.get("receipt_date")), r["receipt_no"]))
    for r in ordered:
        amount = Decimal(str(r.get("amount") or 0))
        ref = r.get("bill_reference")
        if ref:
            if ref in by_no:
                out.append(Mapping(r["receipt_no"], ref, MAPPED_BY_REFERENCE))
                remaining[ref] -= amount
            continue

        chosen: Optional[dict] = None
        for b in by_party.get(r.get("party_name"), []):
            due = remaining[b["bill_no"]]
            if due > 0 and due >= amount:
                chosen = b
                break
        if chosen is None:
            continue
        out.append(Mapping(r["receipt_no"], chosen["bill_no"], MAPPED_BY_FIFO))
        remaining[chosen["bill_no"]] -= amount
    return out


def map_unmapped(cur) -> int:
    """Run one auto-mapping pass inside the caller's transaction; returns receipts linked."""
    cur.execute(
        """
        SELECT receipt_no, receipt_date, party_name, amount, bill_reference
        FROM receipt
        WHERE bill_no IS NULL
        ORDER BY receipt_date, receipt_no
        FOR UPDATE SKIP LOCKED
        """
    )
    receipts = cur.fetchall()
    if not receipts:
        return 0

    parties = sorted({r["party_name"] for r in receipts})
    refs = sorted({r["bill_reference"] for r in receipts if r.get("bill_reference")})
    cur.execute(
        """
        SELECT b.bill_no, b.bill_date, b.party_name, b.amount,
               COALESCE(SUM(r.amount), 0) AS receipt_total
        FROM bill b
        LEFT JOIN receipt r ON r.bill_no = b.bill_no
        WHERE b.party_name = ANY(%s::text[]) OR b.bill_no = ANY(%s::text[])
        GROUP BY b.bill_no, b.bill_date, b.party_name, b.amount
        """,
        (parties, refs),
    )
    bills = cur.fetchall()

    mapped = 0
    for m in plan_mappings(receipts, bills):
        cur.execute(
            """
            UPDATE receipt
            SET bill_no = %s, mapped_by = %s, mapped_at = now()
            WHERE receipt_no = %s AND bill_no IS NULL
            """,
            (m.bill_no, m.method, m.receipt_no),
        )
        mapped += cur.rowcount or 0
    return mapped


def map_receipt(cur, receipt_no: str, bill_no: str, mapped_by_user: Optional[str] = None) -> dict:
    """Manual link for a receipt the auto pass could not place."""
    cur.execute(
        "SELECT receipt_no, bill_no FROM receipt WHERE receipt_no = %s FOR UPDATE",
        (receipt_no,),
    )
    receipt = cur.fetchone()
    if not receipt:
        raise NotFound(f"receipt {receipt_no} not found")
    if receipt.get("bill_no"):
        raise Conflict(
            f"receipt {receipt_no} is already mapped to bill {receipt['bill_no']}",
            reason="RECEIPT_ALREADY_MAPPED",
        )
    cur.execute("SELECT bill_no FROM bill WHERE bill_no = %s", (bill_no,))
    if not cur.fetchone():
        raise NotFound(f"bill {bill_no} not found")
    cur.execute(
        """
        UPDATE receipt
        SET bill_no = %s, mapped_by = %s, mapped_at = now(), mapped_by_user = %s
        WHERE receipt_no = %s
        RETURNING receipt_no, bill_no, mapped_by, mapped_at
        """,
        (bill_no, MAPPED_MANUALLY, mapped_by_user, receipt_no),
    )
    return cur.fetchone()


def unmatched_receipts(cur, limit: int = 100) -> List[dict]:
    cur.execute(
        """
        SELECT r.receipt_no, r.receipt_date, r.party_name, r.amount, r.mode,
               r.ref_text, r.bill_reference,
               (
                 SELECT count(*)
                 FROM bill b
                 WHERE b.party_name = r.party_name
                   AND b.amount > COALESCE((SELECT SUM(x.amount) FROM receipt x WHERE x.bill_no = b.bill_no), 0)
               ) AS potential_matches
        FROM receipt r
        WHERE r.bill_no IS NULL
        ORDER BY r.receipt_date DESC, r.receipt_no
        LIMIT %s
        """,
        (limit,),
    )
    return cur.fetchall()
