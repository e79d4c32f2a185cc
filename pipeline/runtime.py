"""
OTP Pipeline — Batch Orchestrator

Drives the number-rental provider and the registration/login target
through the record lifecycle. Every workflow is strictly sequential:
one external call at a time, fixed pacing delays between items and
between rounds.

Workflows:
  create(n[, emails])    acquire + register → PENDING
  send_otp()             login every PENDING → WAITING
  check_otp()            fetch OTP for every WAITING → COMPLETED
  check_otp_retry()      check_otp in rounds until nothing is WAITING
  auto_complete(n)       create → send_otp → check_otp_retry
  batch_login(phones)    login arbitrary numbers with retry rounds → LOGIN

Item failures never abort a batch. Preconditions (count out of range,
empty input) raise ValidationError before the first item.

Usage:
    orch = BatchOrchestrator(store, provider, gateway, settings)
    summary = orch.create(3)
    print(summary.succeeded, summary.failed)
"""

from __future__ import annotations

import logging
import re
import sys
import time
from datetime import datetime, timezone
from typing import Any, Callable

from core.config import Settings
from core.exceptions import (
    GatewayError, NoOtpYet, ProviderError, ValidationError,
)
from core.logging import RunLogger
from core.phone import REJECTED, normalize
from core.providers import NumberProvider, extract_otp
from core.registration import RegistrationGateway, generate_registration_data
from pipeline.aggregator import ResultAggregator
from pipeline.lifecycle import LifecycleEngine
from pipeline.store import JsonFileRecordStore, RecordStore
from pipeline.types import (
    ItemOutcome, OutcomeStatus, RecordStatus, WorkRecord, WorkflowSummary,
)

logger = logging.getLogger("otp_pipeline.runtime")

MIN_BATCH = 1
MAX_BATCH = 50
RECENT_LIMIT = 5

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _error_text(e: Exception) -> str:
    return getattr(e, "reason", "") or str(e) or type(e).__name__


class BatchOrchestrator:
    """
    Sequential batch workflows over a RecordStore.

    sleep_fn and clock are injectable so tests never wait on real time.
    """

    def __init__(
        self,
        store: RecordStore,
        provider: NumberProvider,
        gateway: RegistrationGateway,
        settings: Settings | None = None,
        lifecycle: LifecycleEngine | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        verbose: bool = True,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.provider = provider
        self.gateway = gateway
        self.pacing = self.settings.pacing
        self.clock = clock
        self.lifecycle = lifecycle or LifecycleEngine(
            store, expire_after_seconds=self.settings.expire_seconds, clock=clock,
        )
        self._sleep = sleep_fn
        self.verbose = verbose

    # ─── Helpers ─────────────────────────────────────────────────────

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def _run_logger(self, workflow: str) -> RunLogger:
        run = RunLogger(workflow=workflow)
        self.lifecycle.run_logger = run
        return run

    def _still_waiting(self, record: WorkRecord) -> bool:
        """Re-evaluate expiry right before acting on a WAITING record."""
        current = self.store.get(record.id)
        if current is None or current.status != RecordStatus.WAITING:
            return False
        if self.lifecycle.is_expired(current):
            self.lifecycle.sweep_expired()
            return False
        return True

    # ═══════════════════════════════════════════════════════════════
    # Create
    # ═══════════════════════════════════════════════════════════════

    def create(self, n: int, emails: list[str] | None = None) -> WorkflowSummary:
        """
        Rent n numbers and register an account on each.

        Successful registrations become PENDING records. Failed attempts
        leave nothing in the store.
        """
        if not isinstance(n, int) or isinstance(n, bool) or not MIN_BATCH <= n <= MAX_BATCH:
            raise ValidationError(
                f"count must be between {MIN_BATCH} and {MAX_BATCH}, got {n!r}", count=n,
            )
        if emails is not None:
            emails = [e.strip() for e in emails]
            if len(emails) != n:
                raise ValidationError(
                    f"expected {n} emails, got {len(emails)}", count=n, emails=len(emails),
                )
            for email in emails:
                if not _EMAIL_RE.match(email):
                    logger.warning("Email %r does not look like an address, using it anyway", email)

        workflow = "create_with_emails" if emails is not None else "create"
        run = self._run_logger(workflow)
        run.on_workflow_start(count=n)
        start = self.clock()
        summary = WorkflowSummary(workflow=workflow, total=n)
        self._log(f"Creating {n} account(s)")

        for i in range(n):
            phone = ""
            try:
                number = self.provider.acquire_number()
                phone = number.phone
                data = generate_registration_data(
                    phone=number.phone,
                    order_id=number.order_id,
                    email=emails[i] if emails is not None else None,
                    password=self.settings.target.password,
                )
                self.gateway.register(data)
                record = self.lifecycle.create_pending(
                    data.phone, number.order_id, data.email, details="Registered",
                )
            except (ProviderError, GatewayError, ValidationError) as e:
                error = _error_text(e)
                summary.failed += 1
                summary.results.append({
                    "index": i + 1, "phone": phone,
                    "status": OutcomeStatus.FAILED.value, "error": error,
                })
                run.on_item_failure(phone, error, index=i + 1)
                self._log(f"[{i + 1}/{n}] failed: {error}")
            else:
                summary.succeeded += 1
                summary.results.append({
                    "index": i + 1, "phone": record.phone,
                    "status": OutcomeStatus.SUCCESS.value, "record_id": record.id,
                    "email": record.email,
                })
                run.on_item_success(record.phone, index=i + 1, record_id=record.id)
                self._log(f"[{i + 1}/{n}] registered {record.phone}")

            if i < n - 1:
                self._pause(self.pacing.create_item_delay)

        summary.elapsed_seconds = self.clock() - start
        summary.message = (
            f"{summary.succeeded} of {n} created, {summary.succeeded} stored as pending"
        )
        run.on_workflow_end(summary.succeeded, summary.failed, summary.elapsed_seconds)
        self._log(summary.message)
        return summary

    # ═══════════════════════════════════════════════════════════════
    # Send OTP
    # ═══════════════════════════════════════════════════════════════

    def send_otp(self) -> WorkflowSummary:
        """Log in every PENDING record so the target sends its OTP."""
        run = self._run_logger("send_otp")
        start = self.clock()
        records = self.lifecycle.pending()
        summary = WorkflowSummary(workflow="send_otp", total=len(records))
        run.on_workflow_start(count=len(records))
        if not records:
            summary.message = "No pending records"
            run.on_workflow_end(0, 0, 0.0)
            self._log(summary.message)
            return summary

        password = self.settings.target.password
        for i, record in enumerate(records):
            try:
                self.gateway.login(record.phone, password)
                self.lifecycle.mark_waiting(record.id, "OTP requested")
            except GatewayError as e:
                error = _error_text(e)
                summary.failed += 1
                summary.results.append({
                    "phone": record.phone, "record_id": record.id,
                    "status": OutcomeStatus.FAILED.value, "error": error,
                })
                run.on_item_failure(record.phone, error, record_id=record.id)
                self._log(f"{record.phone}: login failed: {error}")
            else:
                summary.succeeded += 1
                summary.results.append({
                    "phone": record.phone, "record_id": record.id,
                    "status": OutcomeStatus.SUCCESS.value,
                })
                run.on_item_success(record.phone, record_id=record.id)
                self._log(f"{record.phone}: OTP requested")

            if i < len(records) - 1:
                self._pause(self.pacing.send_otp_item_delay)

        summary.elapsed_seconds = self.clock() - start
        summary.message = f"{summary.succeeded} waiting for OTP, {summary.failed} failed"
        run.on_workflow_end(summary.succeeded, summary.failed, summary.elapsed_seconds)
        self._log(summary.message)
        return summary

    # ═══════════════════════════════════════════════════════════════
    # Check OTP
    # ═══════════════════════════════════════════════════════════════

    def _check_round(
        self,
        records: list[WorkRecord],
        summary: WorkflowSummary,
        run: RunLogger,
        round_no: int,
        item_delay: float,
        details_fn: Callable[[str], str],
        errored: dict[int, str],
    ) -> tuple[int, int]:
        """
        One pass over WAITING records. Returns (completed, errors) for
        this round. errored keeps the latest provider error per record
        and loses an entry once that record gets any other answer.
        """
        completed = errors = 0
        for i, record in enumerate(records):
            if not self._still_waiting(record):
                continue
            try:
                code = self.provider.fetch_otp(record.order_id)
            except NoOtpYet:
                errored.pop(record.id, None)
                run.on_item_pending(record.phone, record_id=record.id, round=round_no)
            except ProviderError as e:
                errors += 1
                errored[record.id] = _error_text(e)
                run.on_item_failure(record.phone, _error_text(e), round_no=round_no,
                                    record_id=record.id)
                self._log(f"{record.phone}: provider error: {_error_text(e)}")
            else:
                errored.pop(record.id, None)
                self.lifecycle.mark_completed(record.id, details_fn(code))
                completed += 1
                summary.results.append({
                    "phone": record.phone, "record_id": record.id,
                    "status": OutcomeStatus.SUCCESS.value, "otp": code, "round": round_no,
                })
                run.on_item_success(record.phone, round_no=round_no, record_id=record.id)
                self._log(f"{record.phone}: OTP {code}")

            if i < len(records) - 1:
                self._pause(item_delay)
        return completed, errors

    def _tally(
        self,
        summary: WorkflowSummary,
        records: list[WorkRecord],
        errored: dict[int, str],
    ) -> None:
        """
        Count each record exactly once by where it ended up:
        COMPLETED → succeeded, EXPIRED → expired, PENDING or a last
        answer that was a provider error → failed, anything else still
        waiting → skipped.
        """
        current = {r.id: r.status for r in self.store.read_all()}
        for record in records:
            status = current.get(record.id)
            if status == RecordStatus.COMPLETED:
                summary.succeeded += 1
            elif status == RecordStatus.EXPIRED:
                summary.expired += 1
            elif status == RecordStatus.PENDING or record.id in errored:
                summary.failed += 1
                if record.id in errored:
                    summary.results.append({
                        "phone": record.phone, "record_id": record.id,
                        "status": OutcomeStatus.FAILED.value, "error": errored[record.id],
                    })
            else:
                summary.skipped += 1

    def check_otp(self) -> WorkflowSummary:
        """Fetch the OTP for every WAITING record once."""
        run = self._run_logger("check_otp")
        start = self.clock()
        records = self.lifecycle.waiting()
        summary = WorkflowSummary(workflow="check_otp", total=len(records))
        run.on_workflow_start(count=len(records))
        if not records:
            summary.message = "No waiting records"
            run.on_workflow_end(0, 0, 0.0)
            self._log(summary.message)
            return summary

        errored: dict[int, str] = {}
        self._check_round(
            records, summary, run, 1, self.pacing.check_otp_item_delay,
            lambda code: f"OTP: {code}", errored,
        )
        self._tally(summary, records, errored)
        summary.elapsed_seconds = self.clock() - start
        summary.message = f"{summary.succeeded} completed, {summary.skipped} still waiting"
        if summary.failed:
            summary.message += f", {summary.failed} provider error(s)"
        if summary.expired:
            summary.message += f", {summary.expired} expired"
        run.on_workflow_end(summary.succeeded, summary.failed, summary.elapsed_seconds,
                            expired=summary.expired)
        self._log(summary.message)
        return summary

    def check_otp_retry(self) -> WorkflowSummary:
        """
        Repeat check_otp for up to `check_retry_rounds` rounds, pausing
        `check_retry_interval` seconds between rounds. Stops as soon as
        no WAITING record remains.

        Totals count records, not attempts; per-attempt numbers live in
        summary.rounds.
        """
        run = self._run_logger("check_otp_retry")
        start = self.clock()
        summary = WorkflowSummary(workflow="check_otp_retry")
        initial = self.lifecycle.waiting()
        summary.total = len(initial)
        run.on_workflow_start(count=len(initial), rounds=self.pacing.check_retry_rounds)

        errored: dict[int, str] = {}
        records = initial
        for round_no in range(1, self.pacing.check_retry_rounds + 1):
            if not records:
                break
            round_start = self.clock()
            self._log(f"Round {round_no}/{self.pacing.check_retry_rounds}: "
                      f"{len(records)} waiting")
            completed, errors = self._check_round(
                records, summary, run, round_no, self.pacing.check_retry_item_delay,
                lambda code, k=round_no: f"OTP found on retry {k}: {code}", errored,
            )
            elapsed = self.clock() - round_start
            summary.rounds.append({
                "round": round_no, "attempted": len(records),
                "completed": completed, "errors": errors,
                "elapsed_seconds": round(elapsed, 2),
            })
            run.on_round_end(round_no, completed, errors, elapsed)

            records = self.lifecycle.waiting()
            if records and round_no < self.pacing.check_retry_rounds:
                self._log(f"{len(records)} still waiting, next round in "
                          f"{self.pacing.check_retry_interval:g}s")
                self._pause(self.pacing.check_retry_interval)

        self._tally(summary, initial, errored)
        summary.elapsed_seconds = self.clock() - start
        summary.message = (
            f"{summary.succeeded} completed in {len(summary.rounds)} round(s), "
            f"{summary.skipped} still waiting"
        )
        if summary.failed:
            summary.message += f", {summary.failed} provider error(s)"
        if summary.expired:
            summary.message += f", {summary.expired} expired"
        run.on_workflow_end(summary.succeeded, summary.failed, summary.elapsed_seconds,
                            still_waiting=summary.skipped, expired=summary.expired)
        self._log(summary.message)
        return summary

    def completed_otps(self) -> list[dict[str, str]]:
        """Every COMPLETED record as {phone, otp}, oldest first."""
        out = []
        for record in self.lifecycle.select(RecordStatus.COMPLETED):
            out.append({"phone": record.phone, "otp": extract_otp(record.details) or ""})
        return out

    # ═══════════════════════════════════════════════════════════════
    # Auto-complete
    # ═══════════════════════════════════════════════════════════════

    def auto_complete(self, n: int, emails: list[str] | None = None) -> WorkflowSummary:
        """
        create → wait → send_otp → wait → check_otp_retry.

        send_otp and check_otp_retry act on every PENDING / WAITING
        record, but the counts and results cover only the records this
        run created.
        """
        start = self.clock()
        summary = WorkflowSummary(workflow="auto_complete", total=n)

        created = self.create(n, emails)
        summary.rounds.append({"stage": "create", **created.to_dict()})
        if created.succeeded == 0:
            summary.failed = n
            summary.elapsed_seconds = self.clock() - start
            summary.message = "No accounts created, stopping"
            self._log(summary.message)
            return summary

        self._pause(self.pacing.auto_after_create)
        sent = self.send_otp()
        summary.rounds.append({"stage": "send_otp", **sent.to_dict()})

        self._pause(self.pacing.auto_after_send)
        checked = self.check_otp_retry()
        summary.rounds.append({"stage": "check_otp_retry", **checked.to_dict()})

        created_ids = {row["record_id"] for row in created.results if "record_id" in row}
        ours = [r for r in self.store.read_all() if r.id in created_ids]
        errored = {
            row["record_id"]: row["error"] for row in checked.results
            if row["status"] == OutcomeStatus.FAILED.value
        }
        summary.failed = created.failed
        self._tally(summary, ours, errored)
        summary.results = [row for row in checked.results if row["record_id"] in created_ids]
        summary.elapsed_seconds = self.clock() - start
        summary.message = (
            f"{created.succeeded} created, {sent.succeeded} sent, "
            f"{summary.succeeded} completed"
        )
        self._log(summary.message)
        return summary

    # ═══════════════════════════════════════════════════════════════
    # Batch login
    # ═══════════════════════════════════════════════════════════════

    def batch_login(self, phones: list[str], password: str = "") -> WorkflowSummary:
        """
        Log in every phone, then retry the failure cohort for up to
        `login_retry_rounds` extra rounds. Each success appends a LOGIN
        record. Both cohorts are exported as dated snapshot files.
        """
        if not phones:
            raise ValidationError("no phone numbers supplied")

        valid: list[str] = []
        skipped: list[str] = []
        for raw in phones:
            phone = normalize(raw)
            if phone == REJECTED:
                skipped.append(str(raw))
            elif phone not in valid:
                valid.append(phone)
        if not valid:
            raise ValidationError("no valid phone numbers supplied", skipped=skipped)
        for raw in skipped:
            logger.warning("Skipping invalid phone %r", raw)

        password = password or self.settings.target.password
        run = self._run_logger("batch_login")
        run.on_workflow_start(count=len(valid), skipped=len(skipped))
        start = self.clock()
        agg = ResultAggregator(valid)

        max_round = 1 + self.pacing.login_retry_rounds
        for round_no in range(1, max_round + 1):
            if round_no == 1:
                cohort = valid
            else:
                cohort = agg.retry_cohort()
                if not cohort:
                    break
                self._log(f"Retrying {len(cohort)} failed number(s) in "
                          f"{self.pacing.login_retry_delay:g}s")
                self._pause(self.pacing.login_retry_delay)

            agg.start_round(round_no)
            for i, phone in enumerate(cohort):
                try:
                    self.gateway.login(phone, password)
                except GatewayError as e:
                    error = _error_text(e)
                    agg.record(ItemOutcome(phone, OutcomeStatus.FAILED, round=round_no,
                                           error=error))
                    run.on_item_failure(phone, error, round_no=round_no)
                    self._log(f"[round {round_no}] {phone}: failed: {error}")
                else:
                    self.lifecycle.record_login(phone, details=f"Login success (round {round_no})")
                    agg.record(ItemOutcome(phone, OutcomeStatus.SUCCESS, round=round_no))
                    run.on_item_success(phone, round_no=round_no)
                    self._log(f"[round {round_no}] {phone}: success")

                if i < len(cohort) - 1:
                    self._pause(self.pacing.login_item_delay)

            stats = agg.end_round()
            run.on_round_end(round_no, stats.succeeded, stats.failed, stats.elapsed_seconds)
            self._log(f"Round {round_no}: {stats.succeeded} success, {stats.failed} failed "
                      f"({stats.elapsed_seconds:.1f}s)")

        paths = agg.export(self.settings.storage.export_dir,
                           now=datetime.fromtimestamp(self.clock(), tz=timezone.utc))
        totals = agg.summary()

        summary = WorkflowSummary(
            workflow="batch_login",
            total=totals["total"],
            succeeded=totals["succeeded"],
            failed=totals["failed"],
            skipped=len(skipped),
            rounds=totals["rounds"],
            elapsed_seconds=self.clock() - start,
        )
        for phone, verdict in agg.verdicts().items():
            row: dict[str, Any] = {
                "phone": phone,
                "status": "success" if verdict["success"] else "failed",
            }
            if not verdict["success"]:
                row["error"] = verdict["error"]
            summary.results.append(row)
        if paths.success:
            summary.artifacts["success"] = str(paths.success)
        if paths.failure:
            summary.artifacts["failure"] = str(paths.failure)
        summary.message = (
            f"{totals['succeeded']}/{totals['total']} success ({totals['success_percent']}%), "
            f"{totals['failed']} failed ({totals['failure_percent']}%), "
            f"{totals['retry_rounds']} retry round(s)"
        )
        run.on_workflow_end(summary.succeeded, summary.failed, summary.elapsed_seconds,
                            retry_rounds=totals["retry_rounds"])
        self._log(summary.message)
        return summary

    # ═══════════════════════════════════════════════════════════════
    # Store views
    # ═══════════════════════════════════════════════════════════════

    def status(self) -> dict[str, Any]:
        counts = self.lifecycle.counts()
        recent = self.store.read_all()[:RECENT_LIMIT]
        return {"counts": counts, "recent": [r.to_dict() for r in recent]}

    def list_records(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [
            {**r.to_dict(), "ageMinutes": r.age_minutes(now)}
            for r in self.lifecycle.all_records(oldest_first=True)
        ]

    def clear(self) -> str:
        """Back up every record, then empty the store. Returns the backup path."""
        path = self.store.clear(self.settings.storage.backup_dir)
        self._log(f"Cleared store, backup at {path}")
        return str(path)

    # ─── Logging ─────────────────────────────────────────────────────

    def _log(self, msg: str):
        if self.verbose:
            print(f"  [otp] {msg}", file=sys.stderr, flush=True)


# ═══════════════════════════════════════════════════════════════════
# Wiring
# ═══════════════════════════════════════════════════════════════════

def build_orchestrator(
    settings: Settings,
    store: RecordStore | None = None,
    provider: NumberProvider | None = None,
    gateway: RegistrationGateway | None = None,
    verbose: bool = True,
) -> BatchOrchestrator:
    """Production wiring: JSON file store, JasaOTP over httpx, Playwright target."""
    if store is None:
        store = JsonFileRecordStore(settings.storage.path).open()
    if provider is None:
        from core.providers import JasaOtpProvider
        provider = JasaOtpProvider.from_settings(settings)
    if gateway is None:
        from core.browser import PlaywrightRegistrationGateway
        gateway = PlaywrightRegistrationGateway.from_settings(settings)
    return BatchOrchestrator(store, provider, gateway, settings=settings, verbose=verbose)
