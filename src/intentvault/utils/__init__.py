from .json import json_loads, canonical_json
from .logging import configure_logging
from .timestamps import now_iso, now_ms, monotonic

__all__ = [
    "json_loads",
    "canonical_json",
    "configure_logging",
    "now_iso",
    "now_ms",
    "monotonic",
]
