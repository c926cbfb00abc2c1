"""Structured logging configuration for KioskFace.

Environment variables:
    KF_LOG_FORMAT  -- ``json`` for structured JSON output, ``text`` for human-readable (default).
    KF_LOG_LEVEL   -- Python log level name (default: ``INFO``).

Liveness steps log with ``session_id``, ``step``, ``status`` and
``elapsed_ms`` extras. Both formatters surface them: as JSON keys, or as a
bracketed suffix in text mode.
"""

from __future__ import annotations

import logging
import os
import traceback
from typing import Any

SESSION_FIELDS = ("session_id", "step", "status", "elapsed_ms")


def _is_json_mode() -> bool:
    """Return True when structured JSON logging is requested."""
    return os.environ.get("KF_LOG_FORMAT", "text").lower() == "json"


def _get_log_level() -> int:
    """Return the numeric log level from KF_LOG_LEVEL (default INFO)."""
    name = os.environ.get("KF_LOG_LEVEL", "INFO").upper()
    numeric = getattr(logging, name, None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric


def _session_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in SESSION_FIELDS
        if getattr(record, key, None) is not None
    }


class SessionTextFormatter(logging.Formatter):
    """Plain text lines with the scan context appended, e.g. ``[session_id=ab12 step=...]``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        line = super().format(record)
        fields = _session_fields(record)
        if not fields:
            return line
        context = " ".join(f"{k}={v}" for k, v in fields.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{context}]{sep}{tail}"


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter that emits one JSON object per log line.

    Wraps ``pythonjsonlogger``; the session fields become top-level keys and
    an exception becomes a ``traceback`` list.
    """

    def __init__(self) -> None:
        super().__init__()
        from pythonjsonlogger.json import JsonFormatter

        self._inner = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        if record.exc_info and record.exc_info[1] is not None:
            record.traceback = traceback.format_exception(*record.exc_info)
            record.exc_info = None
            record.exc_text = None
        return self._inner.format(record)


def setup_logging() -> None:
    """Configure the root logger according to KF_LOG_FORMAT and KF_LOG_LEVEL."""
    level = _get_log_level()
    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers so we don't double-log during tests.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(StructuredJsonFormatter() if _is_json_mode() else SessionTextFormatter())
    root.addHandler(handler)


def log_startup_info(detector_backend: str, landmark_backend: str) -> None:
    """Emit a structured startup log line with pipeline configuration."""
    import kioskface

    logger = logging.getLogger("kioskface")
    logger.info(
        "KioskFace started",
        extra={
            "version": kioskface.__version__,
            "detector_backend": detector_backend,
            "landmark_backend": landmark_backend,
            "detector_tiers": os.environ.get("KF_DETECTOR_TIERS", "default"),
        },
    )
