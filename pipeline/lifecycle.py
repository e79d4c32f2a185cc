"""
OTP Pipeline — Record Lifecycle

The state machine every work record moves through, plus the
sweep-on-read expiry policy:

    (registration ok) → PENDING → WAITING → COMPLETED
                                     └────→ EXPIRED   (createdAt + expiry passed)
    (batch login ok)  → LOGIN   (fresh record; any state may also be marked LOGIN)

FAILED and SUCCESS are reserved: declared, never entered.

Every query used to pick work first sweeps stale WAITING records into
EXPIRED, so no workflow ever acts on a WAITING record whose deadline
has already passed. There is no background timer.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from core.exceptions import InvalidTransition
from core.logging import RunLogger
from core.phone import require_phone
from pipeline.store import RecordStore
from pipeline.types import RecordStatus, WorkRecord

logger = logging.getLogger("otp_pipeline.lifecycle")

DEFAULT_EXPIRE_SECONDS = 10 * 60

# Allowed transitions: from_state → set of valid to_states
_TRANSITIONS: dict[RecordStatus, set[RecordStatus]] = {
    RecordStatus.PENDING:   {RecordStatus.WAITING, RecordStatus.LOGIN},
    RecordStatus.WAITING:   {RecordStatus.COMPLETED, RecordStatus.EXPIRED, RecordStatus.LOGIN},
    RecordStatus.COMPLETED: {RecordStatus.LOGIN},
    RecordStatus.EXPIRED:   {RecordStatus.LOGIN},
    RecordStatus.LOGIN:     set(),
    RecordStatus.FAILED:    {RecordStatus.LOGIN},
    RecordStatus.SUCCESS:   {RecordStatus.LOGIN},
}

# States a record may be born in
_INITIAL_STATES = {RecordStatus.PENDING, RecordStatus.LOGIN}

_missing = set(RecordStatus) - set(_TRANSITIONS)
assert not _missing, f"transition table missing states: {_missing}"


def allowed_transitions(status: RecordStatus) -> set[RecordStatus]:
    return set(_TRANSITIONS[status])


def can_transition(from_status: RecordStatus, to_status: RecordStatus) -> bool:
    return to_status in _TRANSITIONS[from_status]


class LifecycleEngine:
    """
    Applies transitions to records in a RecordStore.

    All transitions are merge-updates: status, details and updated_at
    change; every other field is preserved.
    """

    def __init__(
        self,
        store: RecordStore,
        expire_after_seconds: float = DEFAULT_EXPIRE_SECONDS,
        clock: Callable[[], float] = time.time,
        run_logger: RunLogger | None = None,
    ):
        self.store = store
        self.expire_after_seconds = expire_after_seconds
        self.clock = clock
        self.run_logger = run_logger

    # ─── Creation ────────────────────────────────────────────────────

    def _create(self, status: RecordStatus, phone: str, order_id: str = "",
                email: str = "", details: str = "") -> WorkRecord:
        if status not in _INITIAL_STATES:
            raise InvalidTransition(f"records cannot be created as {status.value}")
        record = WorkRecord.create(
            status=status,
            phone=require_phone(phone),
            order_id=order_id,
            email=email,
            details=details,
            now=self.clock(),
        )
        record = self.store.append(record)
        logger.debug("Created record %s [%s] %s", record.id, status.value, record.phone)
        return record

    def create_pending(self, phone: str, order_id: str, email: str = "",
                       details: str = "") -> WorkRecord:
        """Registration succeeded: track the number as PENDING."""
        return self._create(RecordStatus.PENDING, phone, order_id, email, details)

    def record_login(self, phone: str, details: str = "") -> WorkRecord:
        """Batch login succeeded: append a fresh LOGIN record."""
        return self._create(RecordStatus.LOGIN, phone, details=details)

    # ─── Transitions ─────────────────────────────────────────────────

    def transition(self, record_id: int, to: RecordStatus, details: str = "") -> WorkRecord:
        """
        Enforce the lifecycle state machine.
        Raises InvalidTransition if the record is unknown or the edge is not allowed.
        """
        record = self.store.get(record_id)
        if record is None:
            raise InvalidTransition(f"record {record_id} not found")
        if not can_transition(record.status, to):
            raise InvalidTransition(
                f"Record {record_id}: {record.status.value} → {to.value} is not allowed. "
                f"Valid transitions: {sorted(s.value for s in _TRANSITIONS[record.status])}"
            )
        from_status = record.status
        updated = self.store.update(record_id, {
            "status": to,
            "details": details,
            "updated_at": self.clock(),
        })
        if self.run_logger:
            self.run_logger.on_transition(record_id, from_status.value, to.value)
        return updated

    def mark_waiting(self, record_id: int, details: str = "") -> WorkRecord:
        return self.transition(record_id, RecordStatus.WAITING, details)

    def mark_completed(self, record_id: int, details: str) -> WorkRecord:
        return self.transition(record_id, RecordStatus.COMPLETED, details)

    # ─── Expiry sweep ────────────────────────────────────────────────

    def is_expired(self, record: WorkRecord, now: float | None = None) -> bool:
        if record.status != RecordStatus.WAITING:
            return False
        now = self.clock() if now is None else now
        return now - record.created_at > self.expire_after_seconds

    def sweep_expired(self) -> list[int]:
        """Move every overdue WAITING record to EXPIRED in one write."""
        now = self.clock()
        records = self.store.read_all()
        expired: list[int] = []
        minutes = round(self.expire_after_seconds / 60)
        for r in records:
            if self.is_expired(r, now):
                r.status = RecordStatus.EXPIRED
                r.details = f"OTP expired after {minutes} minutes"
                r.updated_at = now
                expired.append(r.id)
        if expired:
            self.store.write_all(records)
            logger.info("Expired %d waiting record(s)", len(expired))
            if self.run_logger:
                for rid in expired:
                    self.run_logger.on_transition(rid, RecordStatus.WAITING.value,
                                                  RecordStatus.EXPIRED.value)
        return expired

    # ─── Queries (always sweep first) ────────────────────────────────

    def select(self, status: RecordStatus) -> list[WorkRecord]:
        """Records in `status`, oldest created first."""
        self.sweep_expired()
        rows = [r for r in self.store.read_all() if r.status == status]
        return sorted(rows, key=lambda r: (r.created_at, r.id))

    def pending(self) -> list[WorkRecord]:
        return self.select(RecordStatus.PENDING)

    def waiting(self) -> list[WorkRecord]:
        return self.select(RecordStatus.WAITING)

    def all_records(self, oldest_first: bool = True) -> list[WorkRecord]:
        self.sweep_expired()
        rows = self.store.read_all()
        if oldest_first:
            return sorted(rows, key=lambda r: (r.created_at, r.id))
        return rows

    def counts(self) -> dict[str, int]:
        rows = self.all_records(oldest_first=False)
        out = {s.value: 0 for s in RecordStatus}
        for r in rows:
            out[r.status.value] += 1
        out["total"] = len(rows)
        return out
