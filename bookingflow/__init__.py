from __future__ import annotations

"""
Booking flow test harness: drive the booking site through declared steps with
Playwright, record every step outcome and keep screenshots of failures.

Modules exported here are safe to import from application code.
"""

from .browser import BrowserSession, BrowserSessionConfig, Observation, Viewport
from .errors import (
    ActionTimeout,
    ConcurrentAccessError,
    EvaluationError,
    FlowAborted,
    FlowDefinitionError,
    HarnessError,
    LaunchError,
    NavigationError,
    SelectorNotFound,
    StepDefinitionError,
    UnexpectedState,
)
from .models import FlowRun, RunStatus
from .reporter import Reporter, Summary, export_json, load_json, summarize
from .runner import BookingFlowRunner, Flow, run_concurrently, run_flow
from .steps import (
    FlowStep,
    PostCondition,
    StepAction,
    StepExecutor,
    StepOutcome,
    StepResult,
)

__all__ = [
    "ActionTimeout",
    "BookingFlowRunner",
    "BrowserSession",
    "BrowserSessionConfig",
    "ConcurrentAccessError",
    "EvaluationError",
    "Flow",
    "FlowAborted",
    "FlowDefinitionError",
    "FlowRun",
    "FlowStep",
    "HarnessError",
    "LaunchError",
    "NavigationError",
    "Observation",
    "PostCondition",
    "Reporter",
    "RunStatus",
    "SelectorNotFound",
    "StepAction",
    "StepDefinitionError",
    "StepExecutor",
    "StepOutcome",
    "StepResult",
    "Summary",
    "UnexpectedState",
    "Viewport",
    "export_json",
    "load_json",
    "run_concurrently",
    "run_flow",
    "summarize",
]
