"""Tagged console logging for penclick.

Detection runs once per frame, so accepted calibration samples log at
DEBUG. Session lifecycle, microphone release (with its overflow count)
and the per-session level summary log at INFO. Tags name the emitting component:
Session, Capture, Calibration, Config, Signature, History.

`set_log_level` accepts the names used in config.json and on the command
line, including WARN and FATAL. The logger does not propagate, so hosts
embedding penclick keep its output out of their root handlers.
"""
from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger("penclick")
if not _logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(levelname)s][%(tag)s] %(message)s")
    handler.setFormatter(formatter)
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)
    _logger.propagate = False

# Accepted aliases for level names used on the command line and in config
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "App")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def _level_value(level: str | None) -> int:
    level_name = (level or "INFO").upper()
    level_name = _LEVEL_ALIASES.get(level_name, level_name)
    value = getattr(logging, level_name, logging.INFO)
    return value if isinstance(value, int) else logging.INFO


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(_level_value(level), message, tag=tag)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    _logger.setLevel(_level_value(level))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)
