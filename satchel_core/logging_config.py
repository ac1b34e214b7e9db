"""
Structured logging configuration for Satchel.

Supports two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Every handler carries a ``_RedactingFilter`` that masks anything shaped
like key material (hex runs of 32 bytes or more) before it is written.
Python warnings (``DegradedSecurityWarning``) are routed into logging.

Usage:
    from satchel_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="satchel.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from satchel_core.config import LoggingConfig

REDACTED = "<redacted>"
# 32+ byte hex runs: private keys, seeds, chain codes
_SECRET_PATTERNS = (
    re.compile(r"\b[0-9a-fA-F]{64,}\b"),
)


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class _RedactingFilter(logging.Filter):
    """Rewrite the rendered message with secret-shaped tokens masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["error"] = type(record.exc_info[1]).__name__
            log_obj["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",     # cyan
        "INFO": "\033[32m",      # green
        "WARNING": "\033[33m",   # yellow
        "ERROR": "\033[31m",     # red
        "CRITICAL": "\033[1;31m",  # bold red
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        colour, reset = (self.COLOURS.get(record.levelname, ""), self.RESET) if self.colour else ("", "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{colour}{ts} [{record.levelname:<7}]{reset} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + redact(self.formatException(record.exc_info))
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the entire application.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` for coloured single-line output, ``"json"`` for
        newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* written to this file (always in JSON
        format for machine parsing).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove any existing handlers (avoid duplicates on reload)
    root.handlers.clear()
    redactor = _RedactingFilter()

    # --- Console handler ---
    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    console.addFilter(redactor)
    root.addHandler(console)

    # --- Optional file handler ---
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())  # always JSON for files
        fh.addFilter(redactor)
        root.addHandler(fh)

    # DegradedSecurityWarning and friends end up in the same stream
    logging.captureWarnings(True)


def setup_logging_from_config(cfg: LoggingConfig) -> None:
    setup_logging(level=cfg.level, fmt=cfg.format, log_file=cfg.file)
