"""Canonical snapshots and identifier generation.

Snapshots are canonical compact JSON: sorted keys, no insignificant
whitespace. The same state always yields the same text, which keeps the
ledger comparable and exports byte-stable.
"""

from __future__ import annotations

import itertools
import json
import threading
import time
import uuid
from typing import Any

from pydantic import BaseModel

_id_counter = itertools.count()
_id_lock = threading.Lock()


def canonical_json(data: Any) -> str:
    """Serialize a JSON-compatible value to canonical compact text.

    Args:
        data: Value to serialize. Non-JSON types fall back to str().

    Returns:
        Compact JSON with sorted keys.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def snapshot(model: BaseModel) -> str:
    """Return the canonical snapshot text of a domain model."""
    return canonical_json(model.model_dump(mode="json"))


def new_id(prefix: str) -> str:
    """Generate a globally unique id that sorts by creation within a process.

    Layout: ``<prefix>_<epoch ms, 13 digits><counter, 6 digits>_<random hex>``.

    Args:
        prefix: Short entity prefix (e.g. "lb", "ent", "audit").

    Returns:
        The new identifier.
    """
    with _id_lock:
        millis = int(time.time() * 1000)
        counter = next(_id_counter) % 1_000_000
    return f"{prefix}_{millis:013d}{counter:06d}_{uuid.uuid4().hex[:8]}"
