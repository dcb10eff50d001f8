"""Centralized logging configuration for the ``transaction_rules`` package.

Two public helpers:

- ``configure_logging(...)``: attach a single ``StreamHandler`` to the package
  root logger (``"transaction_rules"``). Entrypoints (the CLI, a host app)
  call it once at startup.
- ``get_logger(name)``: acquire a logger by name, ensuring the package root
  logger has at least a ``NullHandler`` so library use stays silent until a
  host configures handlers.

Library modules never attach their own handlers; they call
``get_logger("transaction_rules.<module>")`` and emit short structured lines
such as ``import:chunk_done batch_id=... rows=...``.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from typing import IO

_PKG_LOGGER_NAME = "transaction_rules"
_LEVEL_ENV = "TRANSACTION_RULES_LOG_LEVEL"
_CONFIGURED = False
_LOCK = threading.Lock()


def _level_from_name(value: str) -> int | None:
    value = value.strip().upper()
    if value.isdigit():
        return int(value)
    numeric = getattr(logging, value, None)
    return numeric if isinstance(numeric, int) else None


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        parsed = _level_from_name(level)
        if parsed is not None:
            return parsed
    # Env override when explicit ``level`` is missing or unparseable
    env_val = os.getenv(_LEVEL_ENV)
    if env_val:
        parsed = _level_from_name(env_val)
        if parsed is not None:
            return parsed
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Configure the package root logger exactly once.

    Parameters
    ----------
    level:
        Logging level as ``int`` or level name. When ``None`` the
        ``TRANSACTION_RULES_LOG_LEVEL`` environment variable is used, falling
        back to ``logging.INFO``.
    fmt:
        Optional format string. Defaults to
        ``"%(asctime)s %(name)s %(levelname)s %(message)s"``.
    stream:
        Output stream for the handler (``sys.stderr`` by default).
    """

    global _CONFIGURED
    with _LOCK:
        if _CONFIGURED:
            return

        logger = logging.getLogger(_PKG_LOGGER_NAME)
        for h in list(logger.handlers):
            if isinstance(h, logging.NullHandler):
                logger.removeHandler(h)

        resolved = _parse_level(level)
        handler = logging.StreamHandler(stream)
        handler.setLevel(resolved)
        handler.setFormatter(
            logging.Formatter(fmt or "%(asctime)s %(name)s %(levelname)s %(message)s")
        )

        logger.setLevel(resolved)
        logger.addHandler(handler)
        # Avoid double emission via the root logger.
        logger.propagate = False

        _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name with a silent default for library contexts."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
