"""
Structured logging configuration for EscrowPay.

Supports two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Every handler carries a redaction filter so that fulfillment encodings
never reach a log sink, even if a caller formats one into a message.

Usage:
    from escrowpay_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="escrowpay.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# PREIMAGE-SHA-256 fulfillment header followed by the preimage, and mock
# fulfillments ("MOCK" marker + 32-byte preimage).
_FULFILLMENT_RE = re.compile(r"(A0[0-9A-F]{2}80[0-9A-F]{2}|4D4F434B)[0-9A-F]{64}", re.IGNORECASE)
_CONDITION_HINT = re.compile(r"A0258020[0-9A-F]{64}810120", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask fulfillment-like hex runs, leaving conditions readable."""
    def _sub(m: re.Match) -> str:
        if _CONDITION_HINT.match(text, m.start()):
            return m.group(0)
        return m.group(1) + "…[redacted]"
    return _FULFILLMENT_RE.sub(_sub, text)


class _RedactFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        clean = redact(msg)
        if clean != msg:
            record.msg = clean
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
        contract_id = getattr(record, "contract_id", None)
        if contract_id:
            log_obj["contract_id"] = contract_id
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
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

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        contract_id = getattr(record, "contract_id", None)
        tag = f" [{contract_id}]" if contract_id else ""
        return (
            f"{colour}{ts} [{record.levelname:<7}]{self.RESET} "
            f"{record.name}{tag}: {record.getMessage()}"
        )


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

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_JSONFormatter() if fmt == "json" else _HumanFormatter())
    console.addFilter(_RedactFilter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())  # always JSON for files
        fh.addFilter(_RedactFilter())
        root.addHandler(fh)
