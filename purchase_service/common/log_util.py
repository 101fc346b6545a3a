from __future__ import annotations

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Broker client libraries log every frame at DEBUG/INFO.
NOISY_LOGGERS = ("aio_pika", "aiormq", "pamqp", "httpx")


def setup_logging(level: str = "INFO", log_format: Optional[str] = None) -> None:
    """Configure process-wide logging once, at app creation.

    Unknown level names fall back to INFO instead of raising.
    """
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logging.basicConfig(
        level=resolved,
        format=log_format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
