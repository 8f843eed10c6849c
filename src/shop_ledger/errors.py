"""Exception taxonomy surfaced by the shop ledger core."""

from __future__ import annotations

from typing import Any, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .workflow import StepOutcome


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when required input is missing or invalid, before any write."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced bill, instrument, party or document is unknown."""


class PartialFailureError(BusinessRuleViolation):
    """Raised when a multi-step operation finished with failed steps.

    Steps that already succeeded are not rolled back. ``outcomes`` holds the
    full ordered step list so callers can see what was applied. Operations
    that build a summary while they run, such as a restore, attach it as
    ``result``.
    """

    def __init__(self, operation: str, outcomes: Sequence["StepOutcome"], result: Any = None):
        self.operation = operation
        self.outcomes = tuple(outcomes)
        self.result = result
        failed = [outcome.name for outcome in self.outcomes if not outcome.ok]
        super().__init__(f"{operation} completed with failed steps: {', '.join(failed)}")

    @property
    def failed_steps(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.ok]


class StoreUnavailableError(RuntimeError):
    """Raised when the Record Store times out or its backend fails."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "NotFoundError",
    "PartialFailureError",
    "StoreUnavailableError",
]
