from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the link client.

    Presentation layers get progress through ``on_log`` callbacks; this config
    targets console logs (useful when running headless or from a terminal).
    """

    effective_level = (level or os.environ.get("STUDIOLINK_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # websockets logs every frame at DEBUG; keep it one notch quieter.
    if effective_level == "DEBUG":
        logging.getLogger("websockets").setLevel(logging.INFO)
