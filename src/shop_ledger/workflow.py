"""Best-effort multi-step operations with an inspectable outcome per step.

Deleting a bill or restoring a backup touches several collections. Each
step runs even when an earlier one failed; nothing is rolled back. The
ordered :class:`StepOutcome` list records exactly what was applied, and
:meth:`Workflow.finish` turns any failure into a single
:class:`~shop_ledger.errors.PartialFailureError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from . import log
from .errors import PartialFailureError, ValidationError


@dataclass(frozen=True)
class StepOutcome:
    """Result of one workflow step."""

    name: str
    ok: bool
    detail: Optional[str] = None


class Workflow:
    """Run named steps in order and keep their outcomes."""

    def __init__(self, operation: str):
        self.operation = operation
        self.outcomes: List[StepOutcome] = []

    def run(self, name: str, step: Callable[[], Any]) -> Any:
        """Execute ``step`` and record its outcome.

        Domain and storage errors are caught and logged so later steps still
        run. A validation error in the first step aborts the workflow, since
        nothing has been applied yet; once a step has run it is recorded like
        any other failure.

        Returns:
            Any: The step's return value, or ``None`` when it failed.
        """

        try:
            result = step()
        except ValidationError:
            if not self.outcomes:
                raise
            log.error("%s: step '%s' rejected its input after earlier steps ran", self.operation, name)
            self.outcomes.append(StepOutcome(name=name, ok=False, detail="invalid input"))
            return None
        except Exception as exc:
            log.error("%s: step '%s' failed: %s", self.operation, name, exc)
            self.outcomes.append(StepOutcome(name=name, ok=False, detail=str(exc)))
            return None
        detail = result if isinstance(result, str) else None
        self.outcomes.append(StepOutcome(name=name, ok=True, detail=detail))
        return result

    def skip(self, name: str, reason: str) -> None:
        """Record a step that did not apply, without counting it as failed."""

        self.outcomes.append(StepOutcome(name=name, ok=True, detail=f"skipped: {reason}"))

    @property
    def failed(self) -> List[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def finish(self) -> List[StepOutcome]:
        """Return the outcomes, raising when any step failed.

        Raises:
            PartialFailureError: If at least one step failed.
        """

        if self.failed:
            log.warning(
                "%s finished with %d failed step(s): %s",
                self.operation,
                len(self.failed),
                ", ".join(outcome.name for outcome in self.failed),
            )
            raise PartialFailureError(self.operation, self.outcomes)
        return list(self.outcomes)
