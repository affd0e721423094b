from __future__ import annotations

import logging
import sys
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure the root ``intentvault`` logger.
    Level defaults to the runtime settings (INTENTVAULT_LOG_LEVEL).
    """
    if level is None:
        from intentvault.core.settings import get_settings

        level = get_settings().runtime.log_level

    root = logging.getLogger("intentvault")
    root.setLevel(level.upper())

    if not any(getattr(h, "_intentvault", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._intentvault = True  # type: ignore[attr-defined]
        root.addHandler(handler)
