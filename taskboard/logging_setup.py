"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "taskboard-console"
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


class _ThirdPartyFilter(logging.Filter):
    """Keep taskboard records; let other libraries through at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "taskboard" or record.name.startswith("taskboard."):
            return True
        if record.name.startswith(_NOISY_LOGGERS):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(level: int = logging.INFO) -> None:
    """
    Install a single stderr handler on the root logger.

    Safe to call more than once; the handler installed by a previous call is
    replaced rather than duplicated.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.addFilter(_ThirdPartyFilter())
    root.addHandler(handler)

    logging.getLogger("taskboard").setLevel(level)
    logging.captureWarnings(True)
