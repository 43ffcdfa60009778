from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .browser import BrowserSessionConfig, Viewport

DEFAULT_BASE_URL = "http://localhost:3000"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def load_env() -> None:
    load_dotenv()


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class HarnessSettings:
    """Settings that replace the URLs and paths hardcoded in ad-hoc scripts."""

    base_url: str = DEFAULT_BASE_URL
    headless: bool = True
    screenshot_dir: Path = Path("screenshots")
    report_dir: Path = Path("reports")
    slow_mo_ms: int = 0
    viewport_width: int = 1280
    viewport_height: int = 720
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessSettings":
        env = os.environ if environ is None else environ
        headless = env.get("HEADLESS")
        return cls(
            base_url=env.get("TARGET_BASE_URL") or DEFAULT_BASE_URL,
            headless=parse_bool(headless) if headless else True,
            screenshot_dir=Path(env.get("SCREENSHOT_DIR") or "screenshots"),
            report_dir=Path(env.get("REPORT_DIR") or "reports"),
            slow_mo_ms=int(env.get("SLOW_MO_MS") or 0),
            viewport_width=int(env.get("VIEWPORT_WIDTH") or 1280),
            viewport_height=int(env.get("VIEWPORT_HEIGHT") or 720),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def session_config(self, *, headless: Optional[bool] = None) -> BrowserSessionConfig:
        return BrowserSessionConfig(
            headless=self.headless if headless is None else headless,
            viewport=Viewport(self.viewport_width, self.viewport_height),
            slow_mo_ms=self.slow_mo_ms,
        )
