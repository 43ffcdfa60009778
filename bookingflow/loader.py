from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .errors import FlowDefinitionError
from .runner import Flow
from .steps import FlowStep


def flow_from_dict(payload: Dict[str, Any], *, default_name: str = "") -> Flow:
    """
    Build a Flow from ``{"name": ..., "steps": [...]}``.

    Step entries use the FlowStep field names; ``timeoutMs`` and
    ``waitForSelector`` are accepted as spelled in older flow files.
    """
    if not isinstance(payload, dict):
        raise FlowDefinitionError("flow definition must be a mapping")
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise FlowDefinitionError("flow definition needs a non-empty 'steps' list")

    steps = []
    for index, entry in enumerate(raw_steps, start=1):
        if not isinstance(entry, dict):
            raise FlowDefinitionError(f"step #{index} must be a mapping")
        try:
            steps.append(FlowStep.from_dict(entry))
        except (KeyError, TypeError, ValueError) as exc:
            raise FlowDefinitionError(f"step #{index}: {exc}") from exc

    return Flow(
        name=payload.get("name") or default_name,
        steps=tuple(steps),
        description=payload.get("description", ""),
        start_path=payload.get("start_path", "/"),
    )


def load_flow_file(path: Union[str, Path]) -> Flow:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FlowDefinitionError(f"cannot read flow file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise FlowDefinitionError(f"cannot parse flow file {path}: {exc}") from exc

    return flow_from_dict(payload, default_name=path.stem)
