from __future__ import annotations
"""
rfidtunnel/read_aggregator.py
-----------------------------
Turns inbound realtime messages into:
  - a de-duplicated tag table (tag id -> count, last seen)
  - a bounded recent-event log (newest first)

on_message() is a plain function with no awaits, so on a single event loop
each message is applied atomically with respect to the next one.
"""

import datetime as dt
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from .tag_extract import MIN_TAG_LEN, decode_payload, extract_all_tag_ids

log = logging.getLogger("tunnel.aggregator")

MAX_EVENTS = 200


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return (
        dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# ----------------------------- Data structs -----------------------------
@dataclass
class TagReadRecord:
    id: str
    count: int
    last_seen: float

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "count": self.count, "last_seen": _iso(self.last_seen)}


@dataclass(frozen=True)
class EventLogEntry:
    time: float
    data: Any

    def as_dict(self) -> Dict[str, Any]:
        return {"time": _iso(self.time), "data": self.data}


# ----------------------------- Aggregator -----------------------------
class ReadAggregator:
    def __init__(
        self,
        max_events: int = MAX_EVENTS,
        min_tag_len: int = MIN_TAG_LEN,
        clock: Callable[[], float] = time.time,
    ):
        self.max_events = int(max_events)
        self.min_tag_len = int(min_tag_len)
        self._clock = clock

        self.events: Deque[EventLogEntry] = deque()
        self.events_received = 0

        self.tag_counts: Dict[str, TagReadRecord] = {}
        self.total_reads = 0

    # ---------- ingest ----------
    def on_message(self, raw: str) -> List[str]:
        """
        Apply one raw message. Returns the tag ids it contributed (possibly empty).
        """
        data = decode_payload(raw)
        now = self._clock()
        self.events_received += 1

        self.events.appendleft(EventLogEntry(time=now, data=data))
        if len(self.events) > self.max_events:
            self.events.pop()

        tag_ids = extract_all_tag_ids(data, min_len=self.min_tag_len)
        for tag_id in tag_ids:
            self.total_reads += 1
            rec = self.tag_counts.get(tag_id)
            if rec is not None:
                rec.count += 1
                rec.last_seen = now
            else:
                self.tag_counts[tag_id] = TagReadRecord(id=tag_id, count=1, last_seen=now)
                log.debug("new_tag", extra={"tag": tag_id})

        if not tag_ids:
            log.debug("event_without_tag", extra={"events_received": self.events_received})
        return tag_ids

    # ---------- resets ----------
    def clear(self) -> None:
        """Empty the recent-event log (tag table untouched)."""
        self.events.clear()

    def clear_tags(self) -> None:
        """Reset the tag table and the total-read counter together."""
        self.tag_counts = {}
        self.total_reads = 0

    # ---------- queries ----------
    @property
    def unique_count(self) -> int:
        return len(self.tag_counts)

    @property
    def read_set(self) -> set[str]:
        return set(self.tag_counts)

    def tag_list(self) -> List[TagReadRecord]:
        """Records ordered by count, busiest first."""
        return sorted(self.tag_counts.values(), key=lambda r: r.count, reverse=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "events_received": self.events_received,
            "total_reads": self.total_reads,
            "unique_count": self.unique_count,
            "tags": [r.as_dict() for r in self.tag_list()],
        }
