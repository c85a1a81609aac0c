"""Error taxonomy shared by the run services.

User-facing operations (join, vote) raise the precise subclass; the
scheduler treats ExternalServiceError on the critical path as "retry later".
"""

from __future__ import annotations

from typing import Optional


class RunError(RuntimeError):
    """Base class for run orchestration errors."""


class ValidationError(RunError):
    """Malformed input (missing vote choice, deposit outside bounds, ...)."""


class ConflictError(RunError):
    """Duplicate vote or join."""


class StateError(RunError):
    """Operation invalid for the current run/round phase."""


class NotFoundError(StateError):
    """Referenced run, round or participant does not exist."""


class ReconciliationError(StateError):
    """Internal ledger and external ledger disagree; settlement must not commit."""


class ExternalServiceError(RunError):
    """Venue or ledger call failed or timed out."""

    def __init__(self, service: str, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.cause = cause
