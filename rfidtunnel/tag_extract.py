"""
RFID tunnel - tag identifier extraction
=======================================

Gateways and readers do not agree on a payload shape. A detection may arrive as
a bare EPC string, as {"epc": ...}, as {"tag": {"id": ...}}, as a batch
{"tags": [...]}, wrapped in {"data": ...}, or as something nobody documented.
This module walks whatever `json.loads` produced and pulls tag ids out of it.

Rules (first match wins at every level)
---------------------------------------
- None                 -> no id
- str                  -> trimmed text; hex/hyphen ids of 6+ chars are the
                          expected shape, but any other non-empty text is
                          accepted too (loose fallback)
- list / tuple         -> first element that yields an id
- mapping              -> preferred keys (PREFERRED_KEYS) holding a non-empty
                          string, then "tag", then the "tags" list, then "data",
                          then every remaining value in order
- anything else        -> no id (numbers and booleans are never ids)

The walk never raises for shape reasons and has no depth limit.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, Iterator, List, Optional

PREFERRED_KEYS = ("epc", "tagId", "tag_id", "id", "tagEPC", "EPC")

# Shortest id accepted by extract_all_tag_ids.
MIN_TAG_LEN = 4

_HEX_ID = re.compile(r"[0-9A-Fa-f\-]+")


# ---------- decoding ----------

def decode_payload(raw: str) -> Any:
    """
    Best-effort JSON decode of one inbound message.
    Anything that is not valid JSON, or is nested too deeply for the decoder,
    is wrapped as {"raw": <original text>}.
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return {"raw": raw}


# ---------- single id ----------

def _from_str(s: str) -> Optional[str]:
    s = s.strip()
    if len(s) >= 6 and _HEX_ID.fullmatch(s):
        return s
    if s:
        # loose fallback: any non-empty text is a candidate id
        return s
    return None


def _preferred(d: Mapping) -> Optional[str]:
    for key in PREFERRED_KEYS:
        v = d.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def _children(d: Mapping) -> List[Any]:
    """Values of a mapping in the order they are searched after the preferred keys."""
    out: List[Any] = []
    tag = d.get("tag")
    if tag:
        out.append(tag)
    tags = d.get("tags")
    if isinstance(tags, list):
        out.append(tags)
    data = d.get("data")
    if data:
        out.append(data)
    out.extend(d.values())
    return out


def extract_first_tag_id(payload: Any) -> Optional[str]:
    """
    Return the first tag id found in `payload`, or None.

    Depth-first over an explicit stack of iterators, so nesting depth is only
    bounded by memory.
    """
    stack: List[Iterator[Any]] = [iter((payload,))]
    while stack:
        try:
            value = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue

        if isinstance(value, str):
            found = _from_str(value)
            if found:
                return found
        elif isinstance(value, (list, tuple)):
            stack.append(iter(value))
        elif isinstance(value, Mapping):
            found = _preferred(value)
            if found:
                return found
            stack.append(iter(_children(value)))
        # None, numbers and booleans carry no id
    return None


# ---------- all ids ----------

def extract_all_tag_ids(payload: Any, min_len: int = MIN_TAG_LEN) -> List[str]:
    """
    Return every distinct tag id carried by one event, in discovery order.

    The payload as a whole contributes at most one id (its first match). A
    mapping with a "tags" list additionally contributes the first id of each
    element. Ids shorter than `min_len` are skipped.
    """
    seen: set[str] = set()
    ids: List[str] = []

    def add(tag_id: Optional[str]) -> None:
        if tag_id and len(tag_id) >= min_len and tag_id not in seen:
            seen.add(tag_id)
            ids.append(tag_id)

    add(extract_first_tag_id(payload))
    if isinstance(payload, Mapping) and isinstance(payload.get("tags"), list):
        for item in payload["tags"]:
            add(extract_first_tag_id(item))
    return ids
