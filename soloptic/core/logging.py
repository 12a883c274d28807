"""Logging configuration for the profiler, API and CLI.

Provides:
  - JSON lines for staging / production
  - Colored single-line output for development, prefixed with the
    profiling position (``[Vault:withdraw#3]``)
  - Context fields passed through ``extra=`` by profiler components
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes a component may attach with ``extra=``. The first three form
# the profiling position shown by ``DevFormatter``.
CONTEXT_FIELDS = (
    "contract",
    "function",
    "iteration",
    "tx_hash",
    "duration_ms",
    "status_code",
    "method",
    "path",
)

# Loggers that are chatty at DEBUG/INFO during a fuzz run.
QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "urllib3", "asyncio", "web3", "aiohttp")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields present on *record*."""
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


def position_tag(context: dict[str, Any]) -> str:
    """``contract:function#iteration`` from whichever parts are set."""
    tag = ":".join(str(context[k]) for k in ("contract", "function") if context.get(k))
    if context.get("iteration") is not None and tag:
        tag += f"#{context['iteration']}"
    return tag


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        entry.update(record_context(record))

        if record.exc_info and record.exc_info[1]:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc),
                "recoverable": getattr(exc, "recoverable", None),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Colored human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        msg = record.getMessage()

        tag = position_tag(record_context(record))
        if tag:
            msg = f"[{tag}] {msg}"

        line = f"{color}{ts} [{record.levelname:>8s}]{self.RESET} {record.name}: {msg}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(env: str = "development", log_level: str = "INFO") -> None:
    """Install a single stderr handler on the root logger.

    stdout is left to CLI report output.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if env in ("staging", "production") else DevFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
