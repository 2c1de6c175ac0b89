"""Centralized logging configuration for the ``statement_import`` package.

- ``configure_logging(...)`` attaches a single ``StreamHandler`` to the
  package root logger (``"statement_import"``). Entry points (the CLI) call
  it once at startup.
- ``get_logger(name)`` returns a named logger and makes sure the package root
  has a ``NullHandler`` while nothing is configured.

Library modules never attach handlers of their own.

The HTTP and imaging libraries the pipeline drives (``openai``, ``httpx``,
``httpcore``, ``PIL``) log every request and decoder step at INFO/DEBUG; they
are held at WARNING unless the package itself runs at DEBUG.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "statement_import"
_LEVEL_ENV_VAR = "STATEMENT_IMPORT_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_THIRD_PARTY_LOGGERS = ("openai", "httpx", "httpcore", "PIL")
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        if level.isdigit():
            return int(level)
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
    env_val = os.getenv(_LEVEL_ENV_VAR)
    if env_val:
        return _parse_level(env_val)
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
        Level as ``int`` or level name. Falls back to
        ``STATEMENT_IMPORT_LOG_LEVEL`` and then ``logging.INFO``.
    fmt:
        Optional format string for the single ``StreamHandler``.
    stream:
        Output stream (defaults to ``sys.stderr``).
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    resolved = _parse_level(level)
    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False

    third_party_level = logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
