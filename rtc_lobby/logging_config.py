from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the lobby tools.

    The library itself only creates module loggers; this is for the CLI and
    for debugging a host or client launched from a terminal.
    """

    effective_level = (level or os.environ.get("RTC_LOBBY_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aioice and aiortc are very chatty at debug level.
    if effective_level != "DEBUG":
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.WARNING)
