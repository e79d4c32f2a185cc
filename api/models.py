"""
OTP Pipeline — API Models

Request/response dataclasses for the HTTP wrapper.
No FastAPI dependency — used by the server and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any

from pipeline.runtime import MAX_BATCH, MIN_BATCH
from pipeline.types import WorkflowSummary


@dataclass
class CreateRequest:
    """POST /v1/create request: ?n= plus an optional {"emails": [...]} body."""
    count: Any
    emails: list[str] | None = None

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not isinstance(self.count, int) or isinstance(self.count, bool):
            errors.append("n is required and must be an integer")
        elif not MIN_BATCH <= self.count <= MAX_BATCH:
            errors.append(f"n must be between {MIN_BATCH} and {MAX_BATCH}")
        if self.emails is not None:
            if not isinstance(self.emails, list) or not all(isinstance(e, str) for e in self.emails):
                errors.append("emails must be a list of strings")
            elif isinstance(self.count, int) and len(self.emails) != self.count:
                errors.append(f"expected {self.count} emails, got {len(self.emails)}")
        return errors


@dataclass
class WorkflowResponse:
    """Response body for every workflow endpoint."""
    workflow: str
    success: bool
    message: str
    summary: dict[str, Any] = field(default_factory=dict)
    completed: list[dict[str, str]] = field(default_factory=list)

    @staticmethod
    def from_summary(summary: WorkflowSummary,
                     completed: list[dict[str, str]] | None = None) -> WorkflowResponse:
        return WorkflowResponse(
            workflow=summary.workflow,
            success=summary.failed == 0,
            message=summary.message,
            summary=summary.to_dict(),
            completed=completed or [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
