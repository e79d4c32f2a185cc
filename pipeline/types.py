"""
OTP Pipeline — Type Definitions

Work records, their lifecycle states, and the per-item outcomes the
batch workflows produce.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class RecordStatus(str, enum.Enum):
    """Lifecycle states for a work record."""
    PENDING = "pending"        # registered, not yet logged in
    WAITING = "waiting"        # login done, OTP requested
    COMPLETED = "completed"    # OTP retrieved
    EXPIRED = "expired"        # OTP never arrived in time
    LOGIN = "login"            # batch-login success marker
    FAILED = "failed"          # reserved
    SUCCESS = "success"        # reserved


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WorkRecord:
    """
    One registered number tracked end-to-end.

    Timestamps are epoch seconds in memory and epoch milliseconds on
    disk (createdAt / updatedAt).
    """
    id: int
    status: RecordStatus
    phone: str
    order_id: str = ""
    email: str = ""
    details: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    @staticmethod
    def create(
        status: RecordStatus,
        phone: str,
        order_id: str = "",
        email: str = "",
        details: str = "",
        now: float | None = None,
    ) -> WorkRecord:
        now = time.time() if now is None else now
        return WorkRecord(
            id=int(now * 1000),
            status=status,
            phone=phone,
            order_id=order_id,
            email=email,
            details=details,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(),
            "status": self.status.value,
            "phone": self.phone,
            "orderId": self.order_id,
            "details": self.details,
            "email": self.email,
            "createdAt": int(self.created_at * 1000),
            "updatedAt": int(self.updated_at * 1000),
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> WorkRecord:
        """Raises KeyError / ValueError on malformed rows."""
        created_ms = d.get("createdAt")
        if created_ms is None:
            created_ms = d["id"]
        updated_ms = d.get("updatedAt") or created_ms
        order_id = d.get("orderId", "")
        return WorkRecord(
            id=int(d["id"]),
            status=RecordStatus(d["status"]),
            phone=str(d.get("phone", "")),
            order_id="" if order_id in (None, 0) else str(order_id),
            email=str(d.get("email") or ""),
            details=str(d.get("details") or ""),
            created_at=float(created_ms) / 1000.0,
            updated_at=float(updated_ms) / 1000.0,
        )

    def age_minutes(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return round((now - self.created_at) / 60)


# ─── Outcomes ────────────────────────────────────────────────────────

class OutcomeStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class ItemOutcome:
    """Result of one gateway interaction for one phone."""
    phone: str
    status: OutcomeStatus
    round: int = 1
    error: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        d = {
            "phone": self.phone,
            "status": self.status.value,
            "message": "berhasil" if self.succeeded else "gagal",
            "round": self.round,
            "timestamp": self.timestamp,
        }
        if not self.succeeded:
            d["error"] = self.error
        return d


@dataclass
class WorkflowSummary:
    """Counts reported at the end of every batch workflow."""
    workflow: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    rounds: list[dict[str, Any]] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    message: str = ""
    results: list[dict[str, Any]] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "rounds": self.rounds,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "message": self.message,
            "results": self.results,
            "artifacts": self.artifacts,
        }
