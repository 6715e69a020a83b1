"""
RFID tunnel - case reconciliation
=================================

A *case* is a master tag (the case itself) plus the product tags that must be
inside it. Given the tags read so far, every case gets a status and the whole
tunnel gets one aggregate status:

    per case (first match wins)        aggregate (first match wins)
    ---------------------------        ----------------------------
    expired    - a product flagged     complete   - no cases defined
                 as expired            expired    - any case expired
    incomplete - an expected tag       anomalous  - a read tag belongs to no case
                 has not been read     incomplete - any case incomplete
    complete   - everything read       complete   - otherwise

Everything here is a pure function of (read set, cases) and is recomputed on
each call. The read set may come from the live aggregator or from a simulated
list typed by the operator; this module does not care which.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple


class CaseStatus(str, Enum):
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    ANOMALOUS = "anomalous"
    COMPLETE = "complete"

    @property
    def color(self) -> str:
        return _COLORS[self]

    @property
    def caption(self) -> str:
        return _CAPTIONS[self]

    @property
    def legend(self) -> str:
        return _LEGENDS[self]


# Semaphore shown to operators.
_COLORS = {
    CaseStatus.EXPIRED: "red",
    CaseStatus.INCOMPLETE: "blue",
    CaseStatus.ANOMALOUS: "yellow",
    CaseStatus.COMPLETE: "green",
}
_CAPTIONS = {
    CaseStatus.EXPIRED: "Expired product in case",
    CaseStatus.INCOMPLETE: "Incomplete (reading or tags missing)",
    CaseStatus.ANOMALOUS: "Read contains extra tags",
    CaseStatus.COMPLETE: "Read complete",
}
_LEGENDS = {
    CaseStatus.EXPIRED: "Expired",
    CaseStatus.INCOMPLETE: "Incomplete",
    CaseStatus.ANOMALOUS: "Extra",
    CaseStatus.COMPLETE: "Complete",
}


# ----------------------------- Data structs -----------------------------
@dataclass
class Case:
    id: str
    master_tag: str
    product_tags: List[str] = field(default_factory=list)
    expired_product_tags: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def expected_tags(self) -> List[str]:
        """Master + products, trimmed, empties and repeats dropped, order kept."""
        out: List[str] = []
        for raw in [self.master_tag, *self.product_tags]:
            tag = (raw or "").strip()
            if tag and tag not in out:
                out.append(tag)
        return out

    def is_product_expired(self, tag: str) -> bool:
        return (tag or "").strip() in self.expired_product_tags

    def product_ids(self) -> List[str]:
        return [t for t in (p.strip() for p in self.product_tags) if t]

    def toggle_product_expired(self, tag: str) -> bool:
        """
        Flip the expired flag for one product. Returns the new flag value.
        Raises ValueError when `tag` is not one of this case's products.
        """
        tag_id = (tag or "").strip()
        if not tag_id or tag_id not in self.product_ids():
            raise ValueError(f"{tag_id!r} is not a product of case {self.id}")
        if tag_id in self.expired_product_tags:
            self.expired_product_tags = [t for t in self.expired_product_tags if t != tag_id]
            return False
        self.expired_product_tags = [*self.expired_product_tags, tag_id]
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "master_tag": self.master_tag,
            "product_tags": list(self.product_tags),
            "expired_product_tags": list(self.expired_product_tags),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Case":
        products = [str(p) for p in (d.get("product_tags") or [])]
        expired = [str(p) for p in (d.get("expired_product_tags") or [])]
        # Older records carried a single case-wide flag.
        if d.get("expired") and products and not expired:
            expired = list(products)
        known = {t for t in (p.strip() for p in products) if t}
        expired = [t for t in (e.strip() for e in expired) if t in known]
        return cls(
            id=str(d.get("id") or ""),
            master_tag=str(d.get("master_tag") or "").strip(),
            product_tags=products,
            expired_product_tags=expired,
            created_at=float(d.get("created_at") or time.time()),
        )


# ----------------------------- Read source -----------------------------
_SIM_SPLIT = re.compile(r"[\r\n,;]+")


def parse_simulated_reads(text: Optional[str]) -> List[str]:
    """Operator-typed reads: one per line or separated by commas/semicolons."""
    raw = (text or "").strip()
    if not raw:
        return []
    return [s.strip() for s in _SIM_SPLIT.split(raw) if s.strip()]


def _normalize_reads(reads: Iterable[str]) -> set[str]:
    return {r.strip() for r in reads if r and r.strip()}


# ----------------------------- Per-case queries -----------------------------
def case_status(case: Case, reads: Iterable[str]) -> CaseStatus:
    if case.expired_product_tags:
        return CaseStatus.EXPIRED
    read = _normalize_reads(reads)
    if any(tag not in read for tag in case.expected_tags()):
        return CaseStatus.INCOMPLETE
    return CaseStatus.COMPLETE


def missing_tags(case: Case, reads: Iterable[str]) -> List[str]:
    read = _normalize_reads(reads)
    return [tag for tag in case.expected_tags() if tag not in read]


def case_progress(case: Case, reads: Iterable[str]) -> Tuple[int, int]:
    """(expected tags observed, expected tags total)."""
    read = _normalize_reads(reads)
    expected = case.expected_tags()
    return sum(1 for tag in expected if tag in read), len(expected)


def case_read_summary(case: Case, reads: Iterable[str]) -> Dict[str, Any]:
    read = _normalize_reads(reads)
    products = [(p or "").strip() for p in case.product_tags]
    return {
        "master_read": (case.master_tag or "").strip() in read,
        "products_read": sum(1 for p in products if p in read),
        "products_total": len(products),
    }


def is_tag_read(tag: str, reads: Iterable[str]) -> bool:
    tag_id = (tag or "").strip()
    return bool(tag_id) and tag_id in _normalize_reads(reads)


# ----------------------------- Collection queries -----------------------------
def expected_union(cases: Sequence[Case]) -> set[str]:
    out: set[str] = set()
    for case in cases:
        out.update(case.expected_tags())
    return out


def unlisted_tags(cases: Sequence[Case], reads: Iterable[str]) -> List[str]:
    """Read tags that belong to no case, in read order. Empty when no cases exist."""
    if not cases:
        return []
    expected = expected_union(cases)
    out: List[str] = []
    for r in reads:
        tag = (r or "").strip()
        if tag and tag not in expected and tag not in out:
            out.append(tag)
    return out


def completed_count(cases: Sequence[Case], reads: Iterable[str]) -> int:
    read = _normalize_reads(reads)
    return sum(1 for c in cases if case_status(c, read) is CaseStatus.COMPLETE)


def aggregate_status(cases: Sequence[Case], reads: Iterable[str]) -> CaseStatus:
    if not cases:
        return CaseStatus.COMPLETE
    read = _normalize_reads(reads)
    statuses = [case_status(c, read) for c in cases]
    if CaseStatus.EXPIRED in statuses:
        return CaseStatus.EXPIRED
    if unlisted_tags(cases, read):
        return CaseStatus.ANOMALOUS
    if CaseStatus.INCOMPLETE in statuses:
        return CaseStatus.INCOMPLETE
    return CaseStatus.COMPLETE


def reconcile(cases: Sequence[Case], reads: Iterable[str]) -> Dict[str, Any]:
    """One report with everything the presentation layer shows."""
    read_list = [r.strip() for r in reads if r and r.strip()]
    read = set(read_list)

    rows: List[Dict[str, Any]] = []
    for case in cases:
        status = case_status(case, read)
        done, total = case_progress(case, read)
        rows.append({
            "id": case.id,
            "master_tag": case.master_tag,
            "status": status.value,
            "color": status.color,
            "progress": {"read": done, "total": total},
            "missing": missing_tags(case, read),
            "summary": case_read_summary(case, read),
            "expired_product_tags": list(case.expired_product_tags),
        })

    overall = aggregate_status(cases, read)
    return {
        "status": overall.value,
        "color": overall.color,
        "caption": overall.caption,
        "legend": overall.legend,
        "cases_total": len(cases),
        "cases_complete": completed_count(cases, read),
        "unlisted": unlisted_tags(cases, read_list),
        "cases": rows,
    }
