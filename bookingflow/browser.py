from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, FrozenSet, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .errors import (
    ConcurrentAccessError,
    FlowAborted,
    LaunchError,
    NavigationError,
    SessionClosed,
)

logger = logging.getLogger(__name__)

SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")
READINESS_STATES = ("load", "domcontentloaded", "networkidle")

# Chromium flags needed when running on a VPS.
DEFAULT_LAUNCH_ARGS: FrozenSet[str] = frozenset(
    {"--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"}
)


@dataclass(frozen=True)
class Viewport:
    width: int = 1280
    height: int = 720


@dataclass(frozen=True)
class BrowserSessionConfig:
    """Launch options of a session. Read-only for the session's lifetime."""

    headless: bool = True
    viewport: Viewport = field(default_factory=Viewport)
    slow_mo_ms: int = 0
    launch_args: FrozenSet[str] = DEFAULT_LAUNCH_ARGS
    browser: str = "chromium"
    ignore_https_errors: bool = True
    default_timeout_ms: int = 30_000
    wait_until: str = "networkidle"

    def __post_init__(self) -> None:
        if self.viewport.width <= 0 or self.viewport.height <= 0:
            raise ValueError("viewport dimensions must be positive")
        if self.slow_mo_ms < 0:
            raise ValueError("slow_mo_ms must be >= 0")
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be > 0")
        if self.browser not in SUPPORTED_BROWSERS:
            raise ValueError(f"unsupported browser {self.browser!r}")
        if self.wait_until not in READINESS_STATES:
            raise ValueError(f"unsupported readiness condition {self.wait_until!r}")
        # Accept any iterable of flags but keep the stored value hashable.
        object.__setattr__(self, "launch_args", frozenset(self.launch_args))


@dataclass(frozen=True)
class Observation:
    """Something the page reported while a flow was running."""

    kind: str
    message: str
    url: Optional[str] = None
    status: Optional[int] = None


class BrowserSession(AbstractAsyncContextManager["BrowserSession"]):
    """One browser process, one isolated context and one page.

    The session is owned by a single flow run. ``close()`` may be called from
    any exit path and more than once; only the first call tears the browser
    down. Steps that are in flight when the session closes observe the
    ``closed`` event and abort instead of hanging.
    """

    def __init__(self, config: Optional[BrowserSessionConfig] = None, *, name: Optional[str] = None) -> None:
        self.config = config or BrowserSessionConfig()
        self.id = name or uuid.uuid4().hex[:8]
        self.observations: List[Observation] = []
        self.crashed = False
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()
        self._step_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._released = False

    @classmethod
    async def open(cls, config: Optional[BrowserSessionConfig] = None, *, name: Optional[str] = None) -> "BrowserSession":
        session = cls(config, name=name)
        await session.start()
        return session

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    async def start(self) -> None:
        if self._released:
            raise SessionClosed(f"session {self.id} is closed")
        if self._page is not None:
            return

        config = self.config
        logger.info(
            "Launching %s for session %s (headless=%s, viewport=%dx%d)",
            config.browser,
            self.id,
            config.headless,
            config.viewport.width,
            config.viewport.height,
        )
        try:
            self._playwright = await async_playwright().start()
            launcher = getattr(self._playwright, config.browser)
            self._browser = await launcher.launch(
                headless=config.headless,
                slow_mo=config.slow_mo_ms,
                args=sorted(config.launch_args),
            )
            self._browser.on("disconnected", self._on_disconnected)
            self._context = await self._browser.new_context(
                viewport={"width": config.viewport.width, "height": config.viewport.height},
                ignore_https_errors=config.ignore_https_errors,
            )
            self._page = await self._context.new_page()
            self._page.set_default_timeout(config.default_timeout_ms)
        except Exception as exc:
            await self._release()
            raise LaunchError(f"Could not start {config.browser}: {exc}") from exc

        self._watch(self._page)

    @property
    def page(self) -> Page:
        if self._released:
            raise SessionClosed(f"session {self.id} is closed")
        if self._page is None:
            raise SessionClosed(f"session {self.id} has not been started")
        return self._page

    @property
    def closed(self) -> asyncio.Event:
        """Set as soon as the session is closed or the browser disconnects."""
        return self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def close(self) -> None:
        """Close page, context and browser. Safe to call repeatedly."""
        async with self._lock:
            if self._released:
                return
            self._released = True
            self._closed.set()
            # Teardown runs to the end even if the caller is cancelled.
            await asyncio.shield(self._release())
            logger.info("Session %s closed", self.id)

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> str:
        """
        Load ``url`` and wait for the configured readiness condition.

        Returns the final URL the page ends up at (after potential redirects).
        """
        page = self.page
        timeout = timeout_ms or self.config.default_timeout_ms
        try:
            response = await page.goto(url, wait_until="commit", timeout=timeout)
            await page.wait_for_load_state(self.config.wait_until, timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise NavigationError(url, f"not ready after {timeout} ms") from exc
        except PlaywrightError as exc:
            if self.is_closed:
                raise FlowAborted(f"session {self.id} closed while loading {url}") from exc
            raise NavigationError(url, str(exc)) from exc

        if response is not None and not 200 <= response.status < 400:
            raise NavigationError(url, f"final response was HTTP {response.status}", status=response.status)
        logger.debug("Session %s navigated to %s", self.id, page.url)
        return page.url

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[Page]:
        """Hold the page for one step. A second concurrent holder fails fast."""
        if self._step_lock.locked():
            raise ConcurrentAccessError(f"session {self.id} is already executing a step")
        async with self._step_lock:
            yield self.page

    async def _release(self) -> None:
        for label, resource in (
            ("page", self._page),
            ("context", self._context),
            ("browser", self._browser),
        ):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as exc:
                logger.warning("Session %s: closing %s failed: %s", self.id, label, exc)
        self._page = None
        self._context = None
        self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as exc:
                logger.warning("Session %s: stopping playwright failed: %s", self.id, exc)
            self._playwright = None

    def _on_disconnected(self, _browser=None) -> None:
        if not self._released:
            self.crashed = True
            logger.error("Session %s: browser disconnected", self.id)
        self._closed.set()

    def _watch(self, page: Page) -> None:
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("requestfailed", self._on_request_failed)
        page.on("response", self._on_response)

    def _record(self, observation: Observation) -> None:
        self.observations.append(observation)
        logger.debug("Session %s observed %s: %s", self.id, observation.kind, observation.message)

    def _on_console(self, message) -> None:
        if message.type in ("error", "warning"):
            self._record(Observation(kind=f"console.{message.type}", message=message.text))

    def _on_page_error(self, error) -> None:
        self._record(Observation(kind="pageerror", message=str(error)))

    def _on_request_failed(self, request) -> None:
        self._record(
            Observation(kind="requestfailed", message=request.failure or "request failed", url=request.url)
        )

    def _on_response(self, response) -> None:
        if response.status >= 400:
            self._record(
                Observation(
                    kind="response",
                    message=f"{response.request.method} {response.status}",
                    url=response.url,
                    status=response.status,
                )
            )
