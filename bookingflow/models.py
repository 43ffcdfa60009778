from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .browser import Observation
from .errors import FlowFinalized
from .steps import StepResult


class RunStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class FlowRun:
    """
    Append-only log of one attempt at a flow.

    Results are appended while the run is ``running``; ``finish()`` moves it to
    a terminal status after which the run can no longer change.
    """

    flow_name: str
    id: str = field(default_factory=new_run_id)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    attempt: int = 1
    session_id: Optional[str] = None
    error: Optional[str] = None
    _steps: List[StepResult] = field(default_factory=list, repr=False)
    _observations: List[Observation] = field(default_factory=list, repr=False)

    @property
    def steps(self) -> Tuple[StepResult, ...]:
        return tuple(self._steps)

    @property
    def observations(self) -> Tuple[Observation, ...]:
        return tuple(self._observations)

    @property
    def duration_ms(self) -> int:
        return sum(result.duration_ms for result in self._steps)

    def append(self, result: StepResult) -> None:
        self._ensure_running()
        self._steps.append(result)

    def observe(self, observations: List[Observation]) -> None:
        self._ensure_running()
        self._observations.extend(observations)

    def finish(self, status: RunStatus, *, error: Optional[str] = None) -> None:
        self._ensure_running()
        if not status.terminal:
            raise ValueError("a run can only finish in a terminal status")
        self.status = status
        if error is not None:
            self.error = error
        self.finished_at = utcnow()

    def _ensure_running(self) -> None:
        if self.status.terminal:
            raise FlowFinalized(f"run {self.id} is already {self.status.value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flow": self.flow_name,
            "status": self.status.value,
            "attempt": self.attempt,
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "steps": [result.to_dict() for result in self._steps],
            "observations": [
                {
                    "kind": item.kind,
                    "message": item.message,
                    "url": item.url,
                    "status": item.status,
                }
                for item in self._observations
            ],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FlowRun":
        finished_at = payload.get("finished_at")
        return cls(
            flow_name=payload["flow"],
            id=payload["id"],
            started_at=datetime.fromisoformat(payload["started_at"]),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
            status=RunStatus(payload["status"]),
            attempt=int(payload.get("attempt", 1)),
            session_id=payload.get("session_id"),
            error=payload.get("error"),
            _steps=[StepResult.from_dict(item) for item in payload.get("steps", [])],
            _observations=[
                Observation(
                    kind=item["kind"],
                    message=item["message"],
                    url=item.get("url"),
                    status=item.get("status"),
                )
                for item in payload.get("observations", [])
            ],
        )
