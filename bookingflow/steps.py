from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .errors import (
    RETRYABLE_ERRORS,
    ActionTimeout,
    EvaluationError,
    FlowAborted,
    SelectorNotFound,
    StepDefinitionError,
    StepError,
    UnexpectedState,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_BACKOFF_MS = 500
FIRST_MATCH_NOTE = "acts on the first matching element (index 0)"
INDEX_PREFIX = "index:"


class StepAction(str, Enum):
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    WAIT_FOR_SELECTOR = "wait_for_selector"
    EVALUATE = "evaluate"

    @classmethod
    def parse(cls, value: "str | StepAction") -> "StepAction":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip()
        # camelCase spelling used by hand-written flow files
        if normalized == "waitForSelector":
            normalized = cls.WAIT_FOR_SELECTOR.value
        try:
            return cls(normalized)
        except ValueError:
            raise StepDefinitionError(f"unknown step action {value!r}") from None


class StepOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ConditionKind(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"
    TEXT_CONTAINS = "text_contains"
    URL_CONTAINS = "url_contains"
    SCRIPT = "script"


@dataclass(frozen=True)
class PostCondition:
    """Page state that must hold once a step's action has run.

    Post-conditions replace polling of page globals and log scraping: the step
    states what the page must look like afterwards and fails with
    ``UnexpectedState`` if it never does.
    """

    kind: ConditionKind
    selector: Optional[str] = None
    text: Optional[str] = None
    script: Optional[str] = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "kind", ConditionKind(self.kind))
        except ValueError:
            raise StepDefinitionError(f"unknown post-condition {self.kind!r}") from None
        if self.kind in (ConditionKind.VISIBLE, ConditionKind.HIDDEN) and not self.selector:
            raise StepDefinitionError(f"{self.kind.value} post-condition needs a selector")
        if self.kind is ConditionKind.TEXT_CONTAINS and not (self.selector and self.text):
            raise StepDefinitionError("text_contains post-condition needs a selector and text")
        if self.kind is ConditionKind.URL_CONTAINS and not self.text:
            raise StepDefinitionError("url_contains post-condition needs text")
        if self.kind is ConditionKind.SCRIPT and not self.script:
            raise StepDefinitionError("script post-condition needs a script")

    @classmethod
    def visible(cls, selector: str) -> "PostCondition":
        return cls(ConditionKind.VISIBLE, selector=selector)

    @classmethod
    def hidden(cls, selector: str) -> "PostCondition":
        return cls(ConditionKind.HIDDEN, selector=selector)

    @classmethod
    def text_contains(cls, selector: str, text: str) -> "PostCondition":
        return cls(ConditionKind.TEXT_CONTAINS, selector=selector, text=text)

    @classmethod
    def url_contains(cls, text: str) -> "PostCondition":
        return cls(ConditionKind.URL_CONTAINS, text=text)

    @classmethod
    def script_truthy(cls, script: str) -> "PostCondition":
        return cls(ConditionKind.SCRIPT, script=script)

    def describe(self) -> str:
        if self.kind is ConditionKind.TEXT_CONTAINS:
            return f"{self.selector} contains {self.text!r}"
        if self.kind is ConditionKind.URL_CONTAINS:
            return f"url contains {self.text!r}"
        if self.kind is ConditionKind.SCRIPT:
            return "script returns a truthy value"
        return f"{self.selector} is {self.kind.value}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value}
        for key in ("selector", "text", "script"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PostCondition":
        return cls(
            kind=payload["kind"],
            selector=payload.get("selector"),
            text=payload.get("text"),
            script=payload.get("script"),
        )


@dataclass(frozen=True)
class FlowStep:
    """
    One atomic interaction with the page.

    ``target`` and then ``fallbacks`` are tried in order; the first selector
    that matches anything wins and the step acts on its first element. For
    ``fill`` steps ``fields`` may list several ``(selector, value)`` pairs that
    are filled in order once ``target`` (their container) is present.
    ``advance`` is clicked after the action and before ``expect`` is checked.
    For ``select`` a value of ``index:N`` picks the N-th option.
    """

    name: str
    action: StepAction
    target: str = ""
    value: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = 0
    fallbacks: Tuple[str, ...] = ()
    wait_for: Optional[str] = None
    fields: Tuple[Tuple[str, str], ...] = ()
    advance: Optional[str] = None
    expect: Optional[PostCondition] = None
    backoff_ms: int = DEFAULT_BACKOFF_MS
    note: str = FIRST_MATCH_NOTE

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", StepAction.parse(self.action))
        object.__setattr__(self, "fallbacks", tuple(self.fallbacks))
        object.__setattr__(self, "fields", tuple((str(sel), str(val)) for sel, val in self.fields))

        if not self.name or not self.name.strip():
            raise StepDefinitionError("step name must not be empty")
        _require_int(self.name, "timeout_ms", self.timeout_ms, minimum=1)
        _require_int(self.name, "retries", self.retries, minimum=0)
        _require_int(self.name, "backoff_ms", self.backoff_ms, minimum=0)

        if self.action is not StepAction.EVALUATE and not self.target:
            raise StepDefinitionError(f"step {self.name!r}: {self.action.value} needs a target selector")
        if self.action is StepAction.EVALUATE and not self.value:
            raise StepDefinitionError(f"step {self.name!r}: evaluate needs a script in value")
        if self.action is StepAction.FILL and self.value is None and not self.fields:
            raise StepDefinitionError(f"step {self.name!r}: fill needs a value or fields")
        if self.action is StepAction.SELECT:
            if self.value is None:
                raise StepDefinitionError(f"step {self.name!r}: select needs a value")
            if self.value.startswith(INDEX_PREFIX):
                index = self.value[len(INDEX_PREFIX):]
                if not index.isdigit():
                    raise StepDefinitionError(f"step {self.name!r}: bad option index {self.value!r}")

    @property
    def candidates(self) -> Tuple[str, ...]:
        return (self.target, *self.fallbacks) if self.target else ()

    def describe(self) -> str:
        target = " | ".join(self.candidates) or "page"
        return f"{self.action.value} {target}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "action": self.action.value,
            "target": self.target,
            "value": self.value,
            "timeout_ms": self.timeout_ms,
            "retries": self.retries,
            "fallbacks": list(self.fallbacks),
            "wait_for": self.wait_for,
            "fields": [list(pair) for pair in self.fields],
            "advance": self.advance,
            "expect": self.expect.to_dict() if self.expect else None,
            "backoff_ms": self.backoff_ms,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FlowStep":
        expect = payload.get("expect")
        fields = payload.get("fields") or ()
        if isinstance(fields, dict):
            fields = fields.items()
        return cls(
            name=payload.get("name", ""),
            action=payload.get("action", ""),
            target=payload.get("target") or "",
            value=payload.get("value"),
            timeout_ms=payload.get("timeout_ms", payload.get("timeoutMs", DEFAULT_TIMEOUT_MS)),
            retries=payload.get("retries", 0),
            fallbacks=tuple(payload.get("fallbacks") or ()),
            wait_for=payload.get("wait_for"),
            fields=tuple(tuple(pair) for pair in fields),
            advance=payload.get("advance"),
            expect=PostCondition.from_dict(expect) if expect else None,
            backoff_ms=payload.get("backoff_ms", DEFAULT_BACKOFF_MS),
            note=payload.get("note", FIRST_MATCH_NOTE),
        )


@dataclass(frozen=True)
class StepResult:
    step: FlowStep
    outcome: StepOutcome
    duration_ms: int
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    screenshot_path: Optional[str] = None

    @classmethod
    def skipped(cls, step: FlowStep, reason: Optional[str] = None) -> "StepResult":
        return cls(step=step, outcome=StepOutcome.SKIPPED, duration_ms=0, error=reason)

    @property
    def passed(self) -> bool:
        return self.outcome is StepOutcome.PASSED

    @property
    def failed(self) -> bool:
        return self.outcome is StepOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.to_dict(),
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "error_kind": self.error_kind,
            "attempts": self.attempts,
            "screenshot_path": self.screenshot_path,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "StepResult":
        return cls(
            step=FlowStep.from_dict(payload["step"]),
            outcome=StepOutcome(payload["outcome"]),
            duration_ms=int(payload["duration_ms"]),
            error=payload.get("error"),
            error_kind=payload.get("error_kind"),
            attempts=int(payload.get("attempts", 0)),
            screenshot_path=payload.get("screenshot_path"),
        )


@dataclass
class _Progress:
    stage: str = "resolve"
    selector: str = ""


class StepExecutor:
    """Run FlowSteps against a Playwright page with timeout and retry policy.

    Every attempt is bounded by the step's ``timeout_ms``. ``SelectorNotFound``
    and ``ActionTimeout`` are retried ``retries`` times with a fixed backoff;
    any other failure ends the step at once. When ``cancel_event`` is set the
    attempt in flight is abandoned and ``FlowAborted`` is raised.
    """

    def __init__(
        self,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._cancel_event = cancel_event
        self._poll_interval = poll_interval

    async def execute(self, page, step: FlowStep) -> StepResult:
        started = time.monotonic()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(step.retries + 1),
                wait=wait_fixed(step.backoff_ms / 1000),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    await self._attempt(page, step)
        except StepError as exc:
            logger.info("Step %s failed after %d attempt(s): %s", step.name, attempts, exc.message)
            return StepResult(
                step=step,
                outcome=StepOutcome.FAILED,
                duration_ms=_elapsed_ms(started),
                error=exc.message,
                error_kind=exc.kind,
                attempts=attempts,
            )

        return StepResult(
            step=step,
            outcome=StepOutcome.PASSED,
            duration_ms=_elapsed_ms(started),
            attempts=attempts,
        )

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def _attempt(self, page, step: FlowStep) -> None:
        if self._cancelled():
            raise FlowAborted(f"session closed before step {step.name!r}")

        progress = _Progress()
        action = asyncio.ensure_future(self._perform(page, step, progress))
        waiters = {action}
        cancel_wait = None
        if self._cancel_event is not None:
            cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=step.timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if action in done:
            action.result()
            return
        if cancel_wait is not None and cancel_wait in done:
            raise FlowAborted(f"session closed during step {step.name!r}")

        if progress.stage == "resolve":
            raise SelectorNotFound(
                step.name,
                f"{progress.selector or step.describe()} not found within {step.timeout_ms} ms",
            )
        if progress.stage == "expect" and step.expect is not None:
            raise UnexpectedState(
                step.name,
                f"expected {step.expect.describe()} within {step.timeout_ms} ms",
            )
        raise ActionTimeout(
            step.name,
            f"{step.action.value} on {progress.selector or 'page'} did not complete within {step.timeout_ms} ms",
        )

    async def _perform(self, page, step: FlowStep, progress: _Progress) -> None:
        try:
            if step.wait_for:
                await self._resolve(page, (step.wait_for,), progress)

            if step.action is StepAction.EVALUATE and not step.target:
                progress.stage = "act"
                await self._evaluate(page, step)
            else:
                locator = await self._resolve(page, step.candidates, progress)
                progress.stage = "act"
                await self._act(page, locator, step, progress)

            if step.advance:
                button = await self._resolve(page, (step.advance,), progress)
                progress.stage = "act"
                await button.click(timeout=step.timeout_ms)

            if step.expect is not None:
                progress.stage = "expect"
                while not await self._holds(page, step, step.expect):
                    await asyncio.sleep(self._poll_interval)
        except StepError:
            raise
        except PlaywrightTimeoutError as exc:
            raise ActionTimeout(step.name, _first_line(exc)) from exc
        except PlaywrightError as exc:
            if self._cancelled():
                raise FlowAborted(f"session closed during step {step.name!r}") from exc
            raise ActionTimeout(step.name, _first_line(exc)) from exc

    async def _resolve(self, page, candidates: Iterable[str], progress: _Progress):
        candidates = tuple(candidates)
        progress.stage = "resolve"
        progress.selector = " | ".join(candidates)
        while True:
            for selector in candidates:
                locator = page.locator(selector)
                if await locator.count() > 0:
                    progress.selector = selector
                    return locator.first
            await asyncio.sleep(self._poll_interval)

    async def _act(self, page, locator, step: FlowStep, progress: _Progress) -> None:
        timeout = step.timeout_ms
        if step.action is StepAction.CLICK:
            await locator.scroll_into_view_if_needed(timeout=timeout)
            await locator.click(timeout=timeout)
        elif step.action is StepAction.FILL:
            if step.fields:
                for selector, value in step.fields:
                    field_locator = await self._resolve(page, (selector,), progress)
                    progress.stage = "act"
                    await field_locator.fill(value, timeout=timeout)
            else:
                await locator.fill(step.value or "", timeout=timeout)
        elif step.action is StepAction.SELECT:
            value = step.value or ""
            if value.startswith(INDEX_PREFIX):
                await locator.select_option(index=int(value[len(INDEX_PREFIX):]), timeout=timeout)
            else:
                await locator.select_option(value, timeout=timeout)
        elif step.action is StepAction.WAIT_FOR_SELECTOR:
            await locator.wait_for(state="visible", timeout=timeout)
        elif step.action is StepAction.EVALUATE:
            await self._evaluate(locator, step)

    async def _evaluate(self, target, step: FlowStep) -> Any:
        """Run the step's script. A script returning exactly ``false`` is a failed check."""
        try:
            result = await target.evaluate(step.value)
        except PlaywrightError as exc:
            if self._cancelled():
                raise FlowAborted(f"session closed during step {step.name!r}") from exc
            raise EvaluationError(step.name, _first_line(exc)) from exc
        if result is False:
            raise UnexpectedState(step.name, "script returned false")
        return result

    async def _holds(self, page, step: FlowStep, condition: PostCondition) -> bool:
        kind = condition.kind
        if kind is ConditionKind.URL_CONTAINS:
            return condition.text in page.url
        if kind is ConditionKind.SCRIPT:
            try:
                return bool(await page.evaluate(condition.script))
            except PlaywrightError as exc:
                if self._cancelled():
                    raise FlowAborted(f"session closed during step {step.name!r}") from exc
                raise EvaluationError(step.name, _first_line(exc)) from exc

        locator = page.locator(condition.selector)
        present = await locator.count() > 0
        if kind is ConditionKind.HIDDEN:
            return not present or not await locator.first.is_visible()
        if not present:
            return False
        if kind is ConditionKind.VISIBLE:
            return await locator.first.is_visible()
        return condition.text in await locator.first.inner_text()


def click(name: str, target: str, **options: Any) -> FlowStep:
    return FlowStep(name=name, action=StepAction.CLICK, target=target, **options)


def fill(name: str, target: str, value: Optional[str] = None, **options: Any) -> FlowStep:
    return FlowStep(name=name, action=StepAction.FILL, target=target, value=value, **options)


def select(name: str, target: str, value: str, **options: Any) -> FlowStep:
    return FlowStep(name=name, action=StepAction.SELECT, target=target, value=value, **options)


def wait_for_selector(name: str, target: str, **options: Any) -> FlowStep:
    return FlowStep(name=name, action=StepAction.WAIT_FOR_SELECTOR, target=target, **options)


def evaluate(name: str, script: str, target: str = "", **options: Any) -> FlowStep:
    return FlowStep(name=name, action=StepAction.EVALUATE, target=target, value=script, **options)


def _require_int(step_name: str, label: str, value: Any, *, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StepDefinitionError(f"step {step_name!r}: {label} must be an integer, got {value!r}")
    if value < minimum:
        raise StepDefinitionError(f"step {step_name!r}: {label} must be >= {minimum}, got {value}")


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


def _first_line(exc: Exception) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
