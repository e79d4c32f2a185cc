"""
OTP Pipeline — Orchestration Core

Work records, their lifecycle, the record store, and the batch
workflows that move numbers from rental to a retrieved OTP.

Usage:
    from pipeline import BatchOrchestrator, InMemoryRecordStore

    orch = BatchOrchestrator(InMemoryRecordStore(), provider, gateway)
    orch.create(3)
    orch.send_otp()
    orch.check_otp_retry()
"""

from pipeline.types import (
    RecordStatus,
    WorkRecord,
    OutcomeStatus,
    ItemOutcome,
    WorkflowSummary,
)
from pipeline.store import (
    RecordStore,
    JsonFileRecordStore,
    InMemoryRecordStore,
    open_store,
)
from pipeline.lifecycle import LifecycleEngine, allowed_transitions, can_transition
from pipeline.aggregator import ResultAggregator
from pipeline.runtime import BatchOrchestrator, build_orchestrator
