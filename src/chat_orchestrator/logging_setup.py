"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "chat_orchestrator.stderr"


def setup_logging(level: str | int = logging.INFO) -> None:
    """Attach one stderr handler to the root logger.

    Safe to call more than once (tests build many apps); the handler is
    replaced, never duplicated.
    """
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
