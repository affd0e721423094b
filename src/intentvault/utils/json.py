from __future__ import annotations

import json
from typing import Any


def json_loads(s: str | bytes) -> Any:
    return json.loads(s)


def canonical_json(obj: Any) -> bytes:
    """Deterministic encoding used for hashing and signing."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
