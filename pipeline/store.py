"""
OTP Pipeline — Record Store

Whole-snapshot persistence for work records. Newest records sit at the
head of the collection; every mutation rewrites the full snapshot.

  - JsonFileRecordStore: a single JSON array on disk (logs.json)
  - InMemoryRecordStore: dev/test, same process

A missing, empty or unparseable backing file is treated as empty and
immediately reset to "[]". Rows that parse but do not map to a record
are dropped one by one. Whenever content is discarded the original
file is first copied to logs_backup_<ms>.json beside it. Parse errors
never reach the caller.

Single-writer: there is no locking, so only one orchestrator process
may use a given file at a time.
"""

from __future__ import annotations

import abc
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

from core.exceptions import StoreCorruption
from pipeline.types import WorkRecord

logger = logging.getLogger("otp_pipeline.store")

# Fields update() may touch; id, phone, email and created_at are fixed at creation
_PATCHABLE = {"status", "order_id", "details", "updated_at"}


class RecordStore(abc.ABC):
    """Abstract record store."""

    @abc.abstractmethod
    def read_all(self) -> list[WorkRecord]:
        """All records, newest first."""

    @abc.abstractmethod
    def write_all(self, records: list[WorkRecord]) -> None:
        """Replace the full collection."""

    @abc.abstractmethod
    def _snapshot_to(self, path: Path) -> None:
        """Write the current collection to a side file."""

    def append(self, record: WorkRecord) -> WorkRecord:
        """Insert at the head. Reassigns id if it collides."""
        records = self.read_all()
        taken = {r.id for r in records}
        while record.id in taken:
            record.id += 1
        records.insert(0, record)
        self.write_all(records)
        return record

    def get(self, record_id: int) -> WorkRecord | None:
        for r in self.read_all():
            if r.id == record_id:
                return r
        return None

    def update(self, record_id: int, patch: dict[str, Any]) -> WorkRecord | None:
        """
        Merge named fields into the matching record and stamp updated_at.
        No-op (returns None) when the id is absent.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"cannot patch fields: {sorted(unknown)}")
        records = self.read_all()
        for r in records:
            if r.id == record_id:
                for key, value in patch.items():
                    setattr(r, key, value)
                if "updated_at" not in patch:
                    r.updated_at = time.time()
                self.write_all(records)
                return r
        return None

    def clear(self, backup_dir: str | Path = ".") -> Path:
        """Snapshot everything to logs_backup_<ms>.json, then reset to empty."""
        path = backup_path(backup_dir)
        self._snapshot_to(path)
        self.write_all([])
        logger.info("Store cleared, backup written to %s", path)
        return path


def backup_path(backup_dir: str | Path = ".") -> Path:
    """A fresh logs_backup_<ms>.json path in backup_dir, never an existing file."""
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    path = backup_dir / f"logs_backup_{stamp}.json"
    while path.exists():
        stamp += 1
        path = backup_dir / f"logs_backup_{stamp}.json"
    return path


def _dump(records: list[WorkRecord]) -> str:
    return json.dumps([r.to_dict() for r in records], indent=2)


def _write_atomic(path: Path, text: str) -> None:
    """Write via temp file + rename so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _parse(content: str) -> tuple[list[WorkRecord], list[Any]]:
    """(records, rows that do not map to a record). Raises StoreCorruption."""
    try:
        rows = json.loads(content)
    except json.JSONDecodeError as e:
        raise StoreCorruption(f"invalid JSON: {e}") from e
    if not isinstance(rows, list):
        raise StoreCorruption(f"expected a JSON array, got {type(rows).__name__}")
    records: list[WorkRecord] = []
    bad: list[Any] = []
    for row in rows:
        try:
            records.append(WorkRecord.from_dict(row))
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping unreadable record %r: %s", row, e)
            bad.append(row)
    return records, bad


def parse_records(content: str) -> list[WorkRecord]:
    """
    Parse a JSON array of records, skipping rows that do not map to a
    record. Raises StoreCorruption when the content is not a JSON array.
    """
    return _parse(content)[0]


class JsonFileRecordStore(RecordStore):
    """JSON-array file store. Opened once per process, flushed on every mutation."""

    def __init__(self, path: str | Path = "logs.json"):
        self.path = Path(path)

    def open(self) -> JsonFileRecordStore:
        """Ensure the backing file exists and is valid."""
        self.read_all()
        return self

    def _reset(self, reason: str) -> list[WorkRecord]:
        logger.warning("Record store %s: %s, resetting to empty", self.path, reason)
        self.write_all([])
        return []

    def _keep_original(self, content: str) -> Path:
        path = backup_path(self.path.parent)
        _write_atomic(path, content)
        return path

    def read_all(self) -> list[WorkRecord]:
        if not self.path.exists():
            return self._reset("file missing")
        content = self.path.read_text(encoding="utf-8").strip()
        if not content:
            return self._reset("file empty")
        try:
            records, bad = _parse(content)
        except StoreCorruption as e:
            kept = self._keep_original(content)
            return self._reset(f"corrupt ({e}), original kept in {kept}")
        if bad:
            kept = self._keep_original(content)
            logger.warning("Record store %s: dropped %d unreadable row(s), original kept in %s",
                           self.path, len(bad), kept)
            self.write_all(records)
        return records

    def write_all(self, records: list[WorkRecord]) -> None:
        _write_atomic(self.path, _dump(records))

    def _snapshot_to(self, path: Path) -> None:
        _write_atomic(path, _dump(self.read_all()))


class InMemoryRecordStore(RecordStore):
    """Keeps serialized rows so callers never share mutable records."""

    def __init__(self, records: list[WorkRecord] | None = None):
        self._rows: list[dict[str, Any]] = [r.to_dict() for r in records or []]
        self.snapshots: dict[Path, list[dict[str, Any]]] = {}

    def read_all(self) -> list[WorkRecord]:
        return [WorkRecord.from_dict(row) for row in self._rows]

    def write_all(self, records: list[WorkRecord]) -> None:
        self._rows = [r.to_dict() for r in records]

    def _snapshot_to(self, path: Path) -> None:
        self.snapshots[path] = [dict(row) for row in self._rows]
        _write_atomic(path, json.dumps(self._rows, indent=2))


def open_store(path: str | Path = "logs.json") -> JsonFileRecordStore:
    return JsonFileRecordStore(path).open()
