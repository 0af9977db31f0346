from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter


_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str | int = "INFO", *, json_format: bool = False) -> logging.Logger:
    """
    Configure the root logger with a single stderr handler.

    Called once by the CLI; library modules only ever call ``logging.getLogger(__name__)``.
    With ``json_format`` every record is emitted as one JSON object carrying
    timestamp, level, logger name and message, plus any ``extra`` fields.
    """
    if json_format:
        formatter: logging.Formatter = JsonFormatter(_TEXT_FORMAT)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level if isinstance(level, int) else level.upper())
    root_logger.handlers = []
    root_logger.addHandler(stream_handler)

    # httpx logs every request at INFO; keep chunk uploads quiet unless debugging.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root_logger


__all__ = ["setup_logging"]
