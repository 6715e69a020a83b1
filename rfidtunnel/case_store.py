from __future__ import annotations
"""
rfidtunnel/case_store.py
------------------------
Case definitions and small settings, persisted through a key-value capability.

The host application supplies the storage medium:
  - MemoryStore : dict-backed, for tests and throwaway sessions
  - SqliteStore : one idempotent `kv` table in a SQLite file

Keys used
  - "case_list"            JSON list of case records
  - "case_show_simulated"  "true"/"false", which read source the operator prefers
  - "rfid_api_base_url"    gateway base URL (see GatewayClient)

Text export/import
  MAESTRO <master tag>      starts a case
  <product tag>             one per line until the next MAESTRO
  # comment                 ignored, as are blank lines

Import replaces the current list only when it parsed at least one case.
"""

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Protocol

from .case_engine import Case

log = logging.getLogger("tunnel.cases")

CASES_KEY = "case_list"
SHOW_SIMULATED_KEY = "case_show_simulated"

MASTER_MARKER = "MAESTRO "

EXPORT_HEADER = (
    "# Cases - what must be read",
    "# MAESTRO = case RFID. Lines below = products until the next MAESTRO.",
    "",
)


# ------------------------
# Key-value capability
# ------------------------
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)


KV_DDL = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at INTEGER              -- epoch seconds
);
"""


class SqliteStore:
    """
    Tiny SQLite-backed key-value store. Schema creation is safe to call at every
    boot. One short-lived connection per call keeps it usable from any thread.
    """
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._mem: Optional[sqlite3.Connection] = None
        with self._session() as cx:
            cx.executescript(KV_DDL)

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self.db_path == ":memory:":
                # a private in-memory DB must outlive individual calls
                if self._mem is None:
                    self._mem = sqlite3.connect(":memory:", check_same_thread=False)
                with self._mem:
                    yield self._mem
                return
            cx = sqlite3.connect(self.db_path)
            try:
                with cx:
                    yield cx
            finally:
                cx.close()

    def get(self, key: str) -> Optional[str]:
        with self._session() as cx:
            row = cx.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        with self._session() as cx:
            cx.execute(
                "INSERT INTO kv(key, value, updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, str(value), int(time.time())),
            )


# ------------------------
# Text format
# ------------------------
def _new_case_id(index: int = 0) -> str:
    return f"case_{int(time.time() * 1000)}_{index}"


def export_cases_text(cases: Iterable[Case]) -> str:
    lines: List[str] = list(EXPORT_HEADER)
    for case in cases:
        lines.append(MASTER_MARKER + case.master_tag)
        for tag in case.product_tags:
            lines.append(tag.strip())
        lines.append("")
    return "\n".join(lines)


def parse_cases_text(text: str) -> List[Case]:
    result: List[Case] = []
    current: Optional[Case] = None
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(MASTER_MARKER):
            master = line[len(MASTER_MARKER):].strip()
            if master:
                current = Case(id=_new_case_id(len(result)), master_tag=master)
                result.append(current)
        elif current is not None:
            current.product_tags.append(line)
    return result


# ------------------------
# Case store
# ------------------------
class CaseStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        self.cases: List[Case] = self._load()

    # ---------- persistence ----------
    def _load(self) -> List[Case]:
        raw = self.kv.get(CASES_KEY)
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            log.warning("case_list_unreadable", extra={"key": CASES_KEY})
            return []
        if not isinstance(items, list):
            return []
        return [Case.from_dict(d) for d in items if isinstance(d, dict)]

    def save(self) -> None:
        self.kv.set(CASES_KEY, json.dumps([c.as_dict() for c in self.cases]))

    # ---------- mutations ----------
    def get(self, case_id: str) -> Optional[Case]:
        for case in self.cases:
            if case.id == case_id:
                return case
        return None

    def add(self, master_tag: str, product_tags: Iterable[str] = ()) -> Case:
        """
        Create a case (newest first). Products equal to the master or repeated
        are skipped, blank master tags rejected with ValueError.
        """
        master = (master_tag or "").strip()
        if not master:
            raise ValueError("master tag is required")
        products: List[str] = []
        for raw in product_tags:
            tag = (raw or "").strip()
            if tag and tag != master and tag not in products:
                products.append(tag)
        case = Case(id=f"case_{int(time.time() * 1000)}", master_tag=master, product_tags=products)
        while self.get(case.id) is not None:
            case.id += "_"
        self.cases = [case, *self.cases]
        self.save()
        log.info("case_added", extra={"case_id": case.id, "master": master, "products": len(products)})
        return case

    def delete(self, case_id: str) -> bool:
        before = len(self.cases)
        self.cases = [c for c in self.cases if c.id != case_id]
        if len(self.cases) == before:
            return False
        self.save()
        return True

    def toggle_expired(self, case_id: str, tag: str) -> Optional[bool]:
        """
        Flip one product's expired flag; None when the case does not exist.
        ValueError (from Case) when `tag` is not one of the case's products.
        """
        case = self.get(case_id)
        if case is None:
            return None
        flag = case.toggle_product_expired(tag)
        self.save()
        return flag

    # ---------- text ----------
    def export_text(self) -> str:
        return export_cases_text(self.cases)

    def import_text(self, text: str) -> int:
        """
        Replace the case list with the parsed text. Returns the number of cases
        loaded; 0 means nothing was recognised and the current list is kept.
        """
        loaded = parse_cases_text(text)
        if not loaded:
            log.warning("case_import_empty", extra={"kept": len(self.cases)})
            return 0
        self.cases = loaded
        self.save()
        log.info("case_import", extra={"cases": len(loaded)})
        return len(loaded)

    # ---------- settings ----------
    def show_simulated(self, default: bool = True) -> bool:
        saved = self.kv.get(SHOW_SIMULATED_KEY)
        if saved is None:
            return default
        return saved == "true"

    def set_show_simulated(self, value: bool) -> None:
        self.kv.set(SHOW_SIMULATED_KEY, "true" if value else "false")
