"""
Logging setup for the CRM integration server.

All diagnostic output goes to stderr. The tool-call protocol speaks JSON-RPC
over stdout, and any stray write there corrupts the stream.
"""

from __future__ import annotations

import logging
import sys

_LOG_FORMAT = "%(asctime)s.%(msecs)03d " "[%(name)s] %(levelname)s " "%(message)s"
_LOG_DATE_FORMAT = "%H:%M:%S"

# Third-party loggers that emit INFO spam on every connection.
_NOISY_LOGGERS = ("redis", "httpx", "httpcore", "asyncio")


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure the root logger to write to stderr.

    Must be called before the server starts so nothing logs to stdout.

    Args:
        level: Python logging level (default: INFO)
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
