from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

from .browser import BrowserSession, BrowserSessionConfig
from .errors import (
    ConcurrentAccessError,
    FlowAborted,
    FlowDefinitionError,
    NavigationError,
    SessionClosed,
)
from .models import FlowRun, RunStatus
from .reporter import Reporter
from .steps import FlowStep, StepExecutor, StepOutcome, StepResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Flow:
    """
    A named, ordered and immutable sequence of steps.

    Flows compose: ``reach_payment.then("book-cash", pay_cash, confirm)``
    reuses the prefix without copying its step definitions.
    """

    name: str
    steps: Tuple[FlowStep, ...]
    description: str = ""
    start_path: str = "/"

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.name:
            raise FlowDefinitionError("flow name must not be empty")
        if not self.steps:
            raise FlowDefinitionError(f"flow {self.name!r} has no steps")
        seen = set()
        for step in self.steps:
            if not isinstance(step, FlowStep):
                raise FlowDefinitionError(f"flow {self.name!r} contains a non-step item {step!r}")
            if step.name in seen:
                raise FlowDefinitionError(f"flow {self.name!r} repeats step name {step.name!r}")
            seen.add(step.name)

    def then(self, name: str, *parts: Union[FlowStep, "Flow"], description: str = "") -> "Flow":
        steps: List[FlowStep] = list(self.steps)
        for part in parts:
            steps.extend(part.steps if isinstance(part, Flow) else (part,))
        return Flow(name=name, steps=tuple(steps), description=description, start_path=self.start_path)

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class BookingFlowRunner:
    """
    Drive a BrowserSession through steps, strictly in order.

    A failed step marks every later step ``skipped`` unless
    ``continue_on_failure`` is set. Losing the session (close, browser crash,
    whole-run deadline) ends the run as ``aborted``. Step failures never raise
    out of ``run()``; ``ConcurrentAccessError`` does, after the run is
    finalized.
    """

    def __init__(
        self,
        *,
        reporter: Optional[Reporter] = None,
        continue_on_failure: bool = False,
        deadline_ms: Optional[int] = None,
        poll_interval: float = 0.1,
    ) -> None:
        if deadline_ms is not None and deadline_ms <= 0:
            raise ValueError("deadline_ms must be > 0")
        self.reporter = reporter
        self.continue_on_failure = continue_on_failure
        self.deadline_ms = deadline_ms
        self._poll_interval = poll_interval

    async def run(
        self,
        steps: Union[Flow, Iterable[FlowStep]],
        session: BrowserSession,
        *,
        flow_name: Optional[str] = None,
        start_url: Optional[str] = None,
        attempt: int = 1,
    ) -> FlowRun:
        if isinstance(steps, Flow):
            flow_name = flow_name or steps.name
        steps = tuple(steps)
        run = FlowRun(flow_name=flow_name or "adhoc", attempt=attempt, session_id=session.id)
        if self.reporter is not None:
            self.reporter.on_run_start(run)

        expired = asyncio.Event()
        watchdog: Optional[asyncio.Task[None]] = None
        if self.deadline_ms is not None:
            watchdog = asyncio.ensure_future(self._watchdog(session, expired))

        status = RunStatus.FAILED
        error: Optional[str] = None
        try:
            status, error = await self._drive(run, steps, session, start_url, expired)
        except ConcurrentAccessError as exc:
            status, error = RunStatus.ABORTED, str(exc)
            raise
        finally:
            if watchdog is not None:
                # Once fired, the watchdog is tearing the session down; let it finish.
                if not expired.is_set():
                    watchdog.cancel()
                await asyncio.gather(watchdog, return_exceptions=True)
            if len(run.steps) < len(steps):
                for step in steps[len(run.steps):]:
                    run.append(await self._report(StepResult.skipped(step, error or "run ended")))
            run.observe(list(session.observations))
            run.finish(status, error=error)
            logger.info("Flow %s run %s finished: %s", run.flow_name, run.id, status.value)
            if self.reporter is not None:
                self.reporter.on_run_complete(run)
        return run

    async def _drive(
        self,
        run: FlowRun,
        steps: Sequence[FlowStep],
        session: BrowserSession,
        start_url: Optional[str],
        expired: asyncio.Event,
    ) -> Tuple[RunStatus, Optional[str]]:
        if start_url:
            try:
                await session.navigate(start_url)
            except NavigationError as exc:
                logger.error("Flow %s: %s", run.flow_name, exc)
                return RunStatus.FAILED, f"NavigationError: {exc}"
            except (FlowAborted, SessionClosed) as exc:
                return RunStatus.ABORTED, self._abort_reason(exc, session, expired)

        executor = StepExecutor(cancel_event=session.closed, poll_interval=self._poll_interval)
        failed = False
        for step in steps:
            if failed and not self.continue_on_failure:
                run.append(await self._report(StepResult.skipped(step, "previous step failed")))
                continue

            started = time.monotonic()
            try:
                async with session.exclusive() as page:
                    result = await executor.execute(page, step)
            except (FlowAborted, SessionClosed) as exc:
                reason = self._abort_reason(exc, session, expired)
                logger.error("Flow %s aborted at step %s: %s", run.flow_name, step.name, reason)
                aborted = StepResult(
                    step=step,
                    outcome=StepOutcome.FAILED,
                    duration_ms=int(round((time.monotonic() - started) * 1000)),
                    error=reason,
                    error_kind=FlowAborted.__name__,
                )
                run.append(await self._report(aborted))
                return RunStatus.ABORTED, reason

            if result.failed:
                failed = True
                page = None if session.is_closed else session.page
                result = await self._report(result, page)
            else:
                result = await self._report(result)
            run.append(result)

        return (RunStatus.FAILED if failed else RunStatus.PASSED), None

    async def _report(self, result: StepResult, page=None) -> StepResult:
        if self.reporter is None:
            return result
        return await self.reporter.on_step_complete(result, page)

    async def _watchdog(self, session: BrowserSession, expired: asyncio.Event) -> None:
        await asyncio.sleep(self.deadline_ms / 1000)
        logger.warning("Run deadline of %d ms exceeded; closing session %s", self.deadline_ms, session.id)
        expired.set()
        await session.close()

    def _abort_reason(self, exc: Exception, session: BrowserSession, expired: asyncio.Event) -> str:
        if expired.is_set():
            return f"run deadline of {self.deadline_ms} ms exceeded"
        if session.crashed:
            return "browser disconnected"
        return str(exc)


async def run_flow(
    flow: Flow,
    config: Optional[BrowserSessionConfig] = None,
    *,
    base_url: str,
    reporter: Optional[Reporter] = None,
    continue_on_failure: bool = False,
    max_flow_retries: int = 0,
    deadline_ms: Optional[int] = None,
    session_factory: Callable[..., BrowserSession] = BrowserSession,
) -> FlowRun:
    """
    Open a session, run ``flow`` from ``base_url`` and always close the session.

    Failed runs are repeated on a fresh session up to ``max_flow_retries``
    times; the last run is returned. ``LaunchError`` propagates to the caller.
    """
    if max_flow_retries < 0:
        raise ValueError("max_flow_retries must be >= 0")

    runner = BookingFlowRunner(
        reporter=reporter,
        continue_on_failure=continue_on_failure,
        deadline_ms=deadline_ms,
    )
    start_url = urljoin(base_url, flow.start_path)
    attempt = 1
    while True:
        session = session_factory(config, name=f"{flow.name}-{attempt}")
        try:
            await session.start()
            run = await runner.run(flow, session, start_url=start_url, attempt=attempt)
        finally:
            await session.close()

        if run.status is RunStatus.PASSED or attempt > max_flow_retries:
            return run
        logger.warning("Flow %s %s on attempt %d, retrying", flow.name, run.status.value, attempt)
        attempt += 1


async def run_concurrently(
    flows: Sequence[Flow],
    config: Optional[BrowserSessionConfig] = None,
    *,
    base_url: str,
    reporter_factory: Optional[Callable[[Flow], Reporter]] = None,
    **options,
) -> List[FlowRun]:
    """Run several flows at once, each on its own browser session and reporter."""
    return list(
        await asyncio.gather(
            *(
                run_flow(
                    flow,
                    config,
                    base_url=base_url,
                    reporter=reporter_factory(flow) if reporter_factory else None,
                    **options,
                )
                for flow in flows
            )
        )
    )
