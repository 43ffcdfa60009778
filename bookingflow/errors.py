from __future__ import annotations

from typing import Optional


class HarnessError(RuntimeError):
    """Base class for every error raised by the booking flow harness."""


class LaunchError(HarnessError):
    """The browser process could not be started."""


class NavigationError(HarnessError):
    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        self.url = url
        self.status = status
        super().__init__(f"{url}: {message}")


class SessionClosed(HarnessError):
    """The browser session was used after close()."""


class ConcurrentAccessError(HarnessError):
    """Two step executions tried to drive the same page at once."""


class FlowAborted(HarnessError):
    """The run lost its browser session (cancellation, crash or deadline)."""


class FlowFinalized(HarnessError):
    """A finished FlowRun was mutated."""


class StepDefinitionError(ValueError):
    """A FlowStep violates its invariants."""


class FlowDefinitionError(ValueError):
    """A flow file or flow name could not be resolved into steps."""


class StepError(HarnessError):
    """Failure of a single step attempt.

    ``kind`` is the stable name written to ``StepResult.error_kind`` and to the
    JSON report. ``retryable`` tells the executor whether another attempt is
    allowed.
    """

    kind = "StepError"
    retryable = False

    def __init__(self, step_name: str, message: str) -> None:
        self.step_name = step_name
        self.message = message
        super().__init__(f"[{step_name}] {message}")


class SelectorNotFound(StepError):
    kind = "SelectorNotFound"
    retryable = True


class ActionTimeout(StepError):
    kind = "ActionTimeout"
    retryable = True


class EvaluationError(StepError):
    kind = "EvaluationError"


class UnexpectedState(StepError):
    kind = "UnexpectedState"


RETRYABLE_ERRORS = (SelectorNotFound, ActionTimeout)


__all__ = [
    "ActionTimeout",
    "ConcurrentAccessError",
    "EvaluationError",
    "FlowAborted",
    "FlowDefinitionError",
    "FlowFinalized",
    "HarnessError",
    "LaunchError",
    "NavigationError",
    "RETRYABLE_ERRORS",
    "SelectorNotFound",
    "SessionClosed",
    "StepDefinitionError",
    "StepError",
    "UnexpectedState",
]
