from __future__ import annotations

import json
import logging
import re
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Tuple

from playwright.async_api import Error as PlaywrightError

from .models import FlowRun
from .steps import StepOutcome, StepResult

logger = logging.getLogger(__name__)

REPORT_VERSION = 1

_OUTCOME_LABELS = {
    StepOutcome.PASSED: "PASS",
    StepOutcome.FAILED: "FAIL",
    StepOutcome.SKIPPED: "SKIP",
}


@dataclass(frozen=True)
class Summary:
    flow_name: str
    run_id: str
    status: str
    total: int
    passed: int
    failed: int
    skipped: int
    duration_ms: int
    failures: Tuple[str, ...] = ()

    @property
    def last_failure(self) -> Optional[str]:
        return self.failures[-1] if self.failures else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow": self.flow_name,
            "run_id": self.run_id,
            "status": self.status,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "failures": list(self.failures),
        }


def summarize(run: FlowRun) -> Summary:
    """Count outcomes and collect failure reasons. Does not touch the run."""
    steps = run.steps
    failures: List[str] = []
    for result in steps:
        if result.outcome is StepOutcome.FAILED:
            kind = f"{result.error_kind}: " if result.error_kind else ""
            failures.append(f"{result.step.name}: {kind}{result.error or 'failed'}")
    if run.error and not failures:
        failures.append(run.error)

    return Summary(
        flow_name=run.flow_name,
        run_id=run.id,
        status=run.status.value,
        total=len(steps),
        passed=sum(1 for result in steps if result.outcome is StepOutcome.PASSED),
        failed=sum(1 for result in steps if result.outcome is StepOutcome.FAILED),
        skipped=sum(1 for result in steps if result.outcome is StepOutcome.SKIPPED),
        duration_ms=run.duration_ms,
        failures=tuple(failures),
    )


def export_json(run: FlowRun) -> str:
    """Serialize a run with sorted keys and fixed indentation so reports diff cleanly."""
    payload = run.to_dict()
    payload["version"] = REPORT_VERSION
    payload["summary"] = summarize(run).to_dict()
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def load_json(text: str) -> FlowRun:
    payload = json.loads(text)
    version = payload.get("version", REPORT_VERSION)
    if version != REPORT_VERSION:
        raise ValueError(f"unsupported report version {version}")
    return FlowRun.from_dict(payload)


def write_report(run: FlowRun, directory: Path | str) -> Path:
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{slugify(run.flow_name)}-{run.id}.json"
    path.write_text(export_json(run) + "\n", encoding="utf-8")
    logger.info("Report written to %s", path)
    return path


def slugify(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", value).strip("-")
    return slug or "step"


def screenshot_name(flow_name: str, step_name: str, moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y%m%dT%H%M%S") + f"{moment.microsecond // 1000:03d}"
    return f"{slugify(flow_name)}-{slugify(step_name)}-{stamp}.png"


def format_step_line(result: StepResult) -> str:
    label = _OUTCOME_LABELS[result.outcome]
    line = f"{label} {result.step.name} ({result.duration_ms} ms"
    if result.attempts > 1:
        line += f", {result.attempts} attempts"
    line += ")"
    if result.error:
        kind = f"{result.error_kind}: " if result.error_kind else ""
        line += f" {kind}{result.error}"
    if result.screenshot_path:
        line += f" [screenshot: {result.screenshot_path}]"
    return line


def format_summary_table(summary: Summary, results: Tuple[StepResult, ...] = ()) -> str:
    rows = [("step", "outcome", "ms", "attempts")]
    for result in results:
        rows.append(
            (
                result.step.name,
                _OUTCOME_LABELS[result.outcome],
                str(result.duration_ms),
                str(result.attempts),
            )
        )
    widths = [max(len(row[column]) for row in rows) for column in range(4)]

    lines = []
    for index, row in enumerate(rows):
        lines.append("  ".join(cell.ljust(widths[column]) for column, cell in enumerate(row)).rstrip())
        if index == 0:
            lines.append("  ".join("-" * width for width in widths))
    lines.append("")
    lines.append(
        f"{summary.flow_name} [{summary.status.upper()}] total={summary.total} "
        f"passed={summary.passed} failed={summary.failed} skipped={summary.skipped} "
        f"duration={summary.duration_ms} ms"
    )
    if summary.last_failure:
        lines.append(f"last failure: {summary.last_failure}")
    return "\n".join(lines)


class Reporter:
    """
    Collect the outcome of one flow run.

    Every completed step is printed as a PASS/FAIL/SKIP line. Failed steps get
    a full-page screenshot when a page is available; a screenshot that cannot
    be taken is logged and the step keeps its own error.
    """

    def __init__(
        self,
        screenshot_dir: Path | str = "screenshots",
        *,
        stream: Optional[TextIO] = None,
        full_page: bool = True,
    ) -> None:
        self.screenshot_dir = Path(screenshot_dir)
        self.stream = stream if stream is not None else sys.stdout
        self.full_page = full_page
        self.results: List[StepResult] = []
        self.screenshots: List[Path] = []
        self.flow_name = "flow"

    def on_run_start(self, run: FlowRun) -> None:
        self.flow_name = run.flow_name
        self._emit(f"RUN {run.flow_name} (run {run.id}, attempt {run.attempt})")

    async def on_step_complete(self, result: StepResult, page=None) -> StepResult:
        if result.outcome is StepOutcome.FAILED and page is not None:
            path = await self.capture_screenshot(page, result.step.name)
            if path is not None:
                result = replace(result, screenshot_path=str(path))
        self.results.append(result)
        self._emit(format_step_line(result))
        return result

    async def capture_screenshot(self, page, step_name: str) -> Optional[Path]:
        path = self.screenshot_dir / screenshot_name(self.flow_name, step_name)
        try:
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=self.full_page)
        except (PlaywrightError, OSError) as exc:
            logger.warning("Screenshot for step %s failed: %s", step_name, exc)
            return None
        self.screenshots.append(path)
        logger.info("Screenshot saved: %s", path)
        return path

    def on_run_complete(self, run: FlowRun) -> Summary:
        summary = summarize(run)
        self._emit(
            f"{summary.status.upper()} {run.flow_name}: {summary.passed}/{summary.total} passed, "
            f"{summary.failed} failed, {summary.skipped} skipped ({summary.duration_ms} ms)"
        )
        return summary

    def _emit(self, line: str) -> None:
        print(line, file=self.stream, flush=True)
