"""
OTP Pipeline — Error Taxonomy

Typed errors so the orchestrator can tell apart:
- Bad input / preconditions → abort the single operation
- Provider failures → record per item, keep going
- Missing OTP → expected, retried silently
- Target (registration/login) failures → record per item with reason
- Store corruption → recovered by the store, never surfaced

Each error carries a retryable flag and free-form detail.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


class ValidationError(PipelineError):
    """Bad phone format, out-of-range counts, empty batch input."""
    pass


# ═══════════════════════════════════════════════════════════════
# Provider Errors: number rental service
# ═══════════════════════════════════════════════════════════════

class ProviderError(PipelineError):
    """Upstream reported failure or the transport errored."""
    retryable = True


class NoOtpYet(ProviderError):
    """The rented number has not received a code yet."""
    pass


# ═══════════════════════════════════════════════════════════════
# Gateway Errors: registration / login target
# ═══════════════════════════════════════════════════════════════

class GatewayError(PipelineError):
    """External target rejected or failed an interaction."""

    def __init__(self, reason: str = "", **kwargs):
        self.reason = reason
        super().__init__(reason, **kwargs)


class RegistrationError(GatewayError):
    pass


class LoginError(GatewayError):
    retryable = True


# ═══════════════════════════════════════════════════════════════
# Internal
# ═══════════════════════════════════════════════════════════════

class StoreCorruption(PipelineError):
    """Backing file could not be parsed. Recovered by resetting to empty."""
    pass


class InvalidTransition(PipelineError):
    """Raised when a lifecycle transition is not allowed."""
    pass
