"""
Logging setup - console plus an append-only log file
"""

import logging
import sys
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"
DEFAULT_LOG_FILE = "/tmp/btwd.log"


def setup_logging(level: str = "INFO", log_file: Optional[str] = DEFAULT_LOG_FILE) -> None:
    """Configure the root logger once for the whole process."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Warning: cannot open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Chatty third-party loggers
    for name in ("aiohttp", "asyncio", "faster_whisper", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
