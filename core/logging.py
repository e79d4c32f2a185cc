"""
OTP Pipeline — Structured Logging

JSON log lines for every workflow event, with a per-run identifier so
all entries for one batch can be correlated.

Usage:
    from core.logging import RunLogger, configure_logging

    configure_logging(level="INFO")
    run = RunLogger(workflow="batch_login")
    run.on_workflow_start(items=12)
    run.on_item_failure("081122334455", "Login failed", round_no=1)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "otp_pipeline"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "otp_pipeline"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("OTP_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "otp_pipeline",
) -> logging.Logger:
    """
    Configure the otp_pipeline logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the otp_pipeline namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_run_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Run Logger
# ═══════════════════════════════════════════════════════════════════

class RunLogger:
    """
    Structured events for one workflow run.

    Every entry carries run_id and workflow so a batch can be replayed
    from the log stream alone.
    """

    def __init__(self, workflow: str = "", run_id: str | None = None):
        self.workflow = workflow
        self.run_id = run_id or generate_run_id()
        self._logger = get_logger("run")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"run_id": self.run_id, "workflow": self.workflow,
                      "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_workflow_start(self, **fields) -> None:
        self._emit(logging.INFO, "workflow_start", **fields)

    def on_item_success(self, phone: str, round_no: int = 1, **fields) -> None:
        self._emit(logging.INFO, "item_success", phone=phone, round=round_no, **fields)

    def on_item_failure(self, phone: str, error: str, round_no: int = 1, **fields) -> None:
        self._emit(logging.WARNING, "item_failure", phone=phone,
                   error=error[:500], round=round_no, **fields)

    def on_item_pending(self, phone: str, **fields) -> None:
        """Expected non-result (e.g. OTP not delivered yet)."""
        self._emit(logging.DEBUG, "item_pending", phone=phone, **fields)

    def on_transition(self, record_id: int, from_status: str, to_status: str) -> None:
        self._emit(logging.INFO, "transition", record_id=record_id,
                   from_status=from_status, to_status=to_status)

    def on_round_end(self, round_no: int, succeeded: int, failed: int,
                     elapsed_s: float) -> None:
        self._emit(logging.INFO, "round_end", round=round_no,
                   succeeded=succeeded, failed=failed,
                   elapsed_s=round(elapsed_s, 2))

    def on_workflow_end(self, succeeded: int, failed: int, elapsed_s: float,
                        **fields) -> None:
        self._emit(logging.INFO, "workflow_end", succeeded=succeeded,
                   failed=failed, elapsed_s=round(elapsed_s, 2), **fields)
