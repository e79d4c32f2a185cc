"""
OTP Pipeline — Result Aggregator

Collects per-phone outcomes across retry rounds and reconciles them
into two disjoint cohorts:

  - a phone that succeeds in any round moves to the success cohort and
    leaves the failure cohort
  - a phone that fails again keeps exactly one failure entry, carrying
    the latest error

Every phone registered with the aggregator ends up in exactly one
cohort. Phones that were never attempted are reported as failed.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pipeline.types import ItemOutcome, OutcomeStatus

logger = logging.getLogger("otp_pipeline.aggregator")

NOT_ATTEMPTED = "not attempted"


@dataclass
class RoundStats:
    round: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    started_at: float = 0.0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


@dataclass
class ExportPaths:
    success: Path | None = None
    failure: Path | None = None


def _percent(part: int, whole: int) -> int:
    return round(part * 100 / whole) if whole else 0


class ResultAggregator:
    """
    Example:
        agg = ResultAggregator(["0811...", "0812..."])
        agg.start_round(1)
        agg.record(ItemOutcome("0811...", OutcomeStatus.SUCCESS))
        agg.record(ItemOutcome("0812...", OutcomeStatus.FAILED, error="timeout"))
        agg.end_round()
        agg.retry_cohort()     # ["0812..."]
    """

    def __init__(self, phones: list[str]):
        # dict keeps input order and drops duplicates
        self._order: list[str] = list(dict.fromkeys(phones))
        self._success: dict[str, ItemOutcome] = {}
        self._failure: dict[str, ItemOutcome] = {}
        self.rounds: list[RoundStats] = []

    @property
    def phones(self) -> list[str]:
        return list(self._order)

    # ─── Rounds ──────────────────────────────────────────────────────

    def start_round(self, round_no: int) -> RoundStats:
        stats = RoundStats(round=round_no, started_at=time.time())
        self.rounds.append(stats)
        return stats

    def end_round(self) -> RoundStats:
        stats = self.rounds[-1]
        stats.elapsed_seconds = time.time() - stats.started_at
        return stats

    @property
    def current_round(self) -> int:
        return self.rounds[-1].round if self.rounds else 0

    # ─── Outcomes ────────────────────────────────────────────────────

    def record(self, outcome: ItemOutcome) -> None:
        if outcome.phone not in self._order:
            raise KeyError(f"unknown phone {outcome.phone!r}")
        if self.rounds:
            stats = self.rounds[-1]
            stats.attempted += 1
            if outcome.succeeded:
                stats.succeeded += 1
            else:
                stats.failed += 1

        if outcome.succeeded:
            self._failure.pop(outcome.phone, None)
            self._success[outcome.phone] = outcome
        elif outcome.phone not in self._success:
            # Replace, never append: one entry per phone with the latest error
            self._failure[outcome.phone] = outcome

    def retry_cohort(self) -> list[str]:
        """Phones that have failed and not yet succeeded, in input order."""
        return [p for p in self._order if p in self._failure]

    # ─── Final views ─────────────────────────────────────────────────

    def _finalize(self) -> None:
        for phone in self._order:
            if phone not in self._success and phone not in self._failure:
                self._failure[phone] = ItemOutcome(
                    phone=phone, status=OutcomeStatus.FAILED,
                    round=self.current_round, error=NOT_ATTEMPTED,
                )

    def succeeded(self) -> list[ItemOutcome]:
        self._finalize()
        return [self._success[p] for p in self._order if p in self._success]

    def failed(self) -> list[ItemOutcome]:
        self._finalize()
        return [self._failure[p] for p in self._order if p in self._failure]

    def verdicts(self) -> dict[str, dict[str, Any]]:
        """phone → {"success": bool, "error": str}, in input order."""
        self._finalize()
        out: dict[str, dict[str, Any]] = {}
        for phone in self._order:
            if phone in self._success:
                out[phone] = {"success": True, "error": ""}
            else:
                out[phone] = {"success": False, "error": self._failure[phone].error}
        return out

    def summary(self) -> dict[str, Any]:
        ok = len(self.succeeded())
        bad = len(self.failed())
        total = len(self._order)
        return {
            "total": total,
            "succeeded": ok,
            "failed": bad,
            "success_percent": _percent(ok, total),
            "failure_percent": _percent(bad, total),
            "retry_rounds": max(0, len(self.rounds) - 1),
            "rounds": [r.to_dict() for r in self.rounds],
        }

    # ─── Export ──────────────────────────────────────────────────────

    def export(self, export_dir: str | Path = ".", now: datetime | None = None) -> ExportPaths:
        """
        Write logsukses_<ts>.json and loggagal_<ts>.json.
        A cohort file is only written when the cohort is non-empty.
        """
        now = now or datetime.now(timezone.utc)
        iso = now.isoformat()
        stamp = iso.replace(":", "-").replace(".", "-").replace("+", "_")
        export_dir = Path(export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)

        paths = ExportPaths()
        ok, bad = self.succeeded(), self.failed()
        if ok:
            paths.success = export_dir / f"logsukses_{stamp}.json"
            _write_snapshot(paths.success, iso, ok)
            logger.info("Saved %d succeeded numbers to %s", len(ok), paths.success)
        if bad:
            paths.failure = export_dir / f"loggagal_{stamp}.json"
            _write_snapshot(paths.failure, iso, bad)
            logger.info("Saved %d failed numbers to %s", len(bad), paths.failure)
        return paths


def _write_snapshot(path: Path, iso: str, outcomes: list[ItemOutcome]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump({
            "timestamp": iso,
            "total": len(outcomes),
            "results": [o.to_dict() for o in outcomes],
        }, f, indent=2)
