"""
In-memory stand-ins for the parts of the Playwright API the harness touches.

A FakeSite is a dictionary of selector -> elements. Clicking an element may
run a callback that changes the site (reveal the next panel, show the thank-you
node, ...), which is enough to model the booking wizard without a browser.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

from bookingflow.browser import BrowserSession, BrowserSessionConfig


@dataclass
class FakeElement:
    label: str = ""
    visible: bool = True
    text: str = ""
    click_error: Optional[str] = None
    value: Optional[str] = None
    selected: Optional[Any] = None


@dataclass
class FakeSite:
    elements: Dict[str, List[FakeElement]] = field(default_factory=dict)
    on_click: Dict[str, Callable[["FakeSite"], None]] = field(default_factory=dict)
    scripts: Dict[str, Any] = field(default_factory=dict)
    actions: List[tuple] = field(default_factory=list)
    url: str = "http://stub.local/"

    def add(self, selector: str, *elements: FakeElement) -> "FakeSite":
        self.elements.setdefault(selector, []).extend(elements or (FakeElement(label=selector),))
        return self

    def remove(self, selector: str) -> None:
        self.elements.pop(selector, None)


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str, index: Optional[int] = None) -> None:
        self._page = page
        self._selector = selector
        self._index = index

    @property
    def first(self) -> "FakeLocator":
        return FakeLocator(self._page, self._selector, 0)

    def _element(self) -> FakeElement:
        matches = self._page.site.elements.get(self._selector, [])
        if not matches:
            raise PlaywrightError(f"no element for {self._selector}")
        return matches[self._index or 0]

    async def count(self) -> int:
        self._page.check_open()
        return len(self._page.site.elements.get(self._selector, []))

    async def scroll_into_view_if_needed(self, timeout: Optional[float] = None) -> None:
        self._page.check_open()

    async def click(self, timeout: Optional[float] = None) -> None:
        self._page.check_open()
        element = self._element()
        self._page.site.actions.append(("click", self._selector, element.label))
        if element.click_error:
            raise PlaywrightError(element.click_error)
        callback = self._page.site.on_click.get(self._selector)
        if callback is not None:
            callback(self._page.site)

    async def fill(self, value: str, timeout: Optional[float] = None) -> None:
        self._page.check_open()
        element = self._element()
        element.value = value
        self._page.site.actions.append(("fill", self._selector, value))

    async def select_option(self, value: Optional[str] = None, *, index: Optional[int] = None, timeout=None) -> None:
        self._page.check_open()
        element = self._element()
        element.selected = value if index is None else index
        self._page.site.actions.append(("select", self._selector, element.selected))

    async def wait_for(self, state: str = "visible", timeout: Optional[float] = None) -> None:
        self._page.check_open()
        element = self._element()
        if state == "visible" and not element.visible:
            while not element.visible:
                await asyncio.sleep(0.005)

    async def is_visible(self) -> bool:
        return self._element().visible

    async def inner_text(self) -> str:
        return self._element().text

    async def evaluate(self, script: str) -> Any:
        return await self._page.evaluate(script)


class FakePage:
    def __init__(
        self,
        site: Optional[FakeSite] = None,
        *,
        screenshot_error: Optional[str] = None,
        close_delay: float = 0.0,
    ) -> None:
        self.site = site or FakeSite()
        self.closed = False
        self.close_calls = 0
        self.screenshots: List[str] = []
        self.screenshot_error = screenshot_error
        self.close_delay = close_delay
        self.goto_status = 200
        self.goto_error: Optional[Exception] = None
        self.handlers: Dict[str, Callable] = {}
        self.default_timeout: Optional[float] = None

    @property
    def url(self) -> str:
        return self.site.url

    def check_open(self) -> None:
        if self.closed:
            raise PlaywrightError("Target page, context or browser has been closed")

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event] = handler

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def evaluate(self, script: str) -> Any:
        self.check_open()
        self.site.actions.append(("evaluate", script))
        outcome = self.site.scripts.get(script)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[float] = None):
        self.check_open()
        if self.goto_error is not None:
            raise self.goto_error
        self.site.url = url
        return FakeResponse(self.goto_status, url)

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[float] = None) -> None:
        self.check_open()

    async def screenshot(self, path: str, full_page: bool = False) -> bytes:
        self.check_open()
        if self.screenshot_error:
            raise PlaywrightError(self.screenshot_error)
        Path(path).write_bytes(b"\x89PNG fake")
        self.screenshots.append(path)
        return b""

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.close_calls += 1
        self.closed = True


@dataclass
class FakeResponse:
    status: int
    url: str


def attach_page(page: FakePage, *, name: str = "fake") -> BrowserSession:
    """A real BrowserSession whose page is a FakePage instead of a browser tab."""
    session = BrowserSession(BrowserSessionConfig(), name=name)
    session._page = page
    session._watch(page)
    return session


class FakeBrowser:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.close_calls = 0
        self.handlers: Dict[str, Callable] = {}
        self.launch_kwargs: Dict[str, Any] = {}

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event] = handler

    async def new_context(self, **kwargs) -> "FakeContext":
        self.context = FakeContext(self.page, kwargs)
        return self.context

    async def close(self) -> None:
        self.close_calls += 1


class FakeContext:
    def __init__(self, page: FakePage, options: Dict[str, Any]) -> None:
        self.page = page
        self.options = options
        self.close_calls = 0

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.close_calls += 1


class FakeBrowserType:
    def __init__(self, browser: FakeBrowser, launch_error: Optional[str] = None) -> None:
        self.browser = browser
        self.launch_error = launch_error

    async def launch(self, **kwargs) -> FakeBrowser:
        if self.launch_error:
            raise PlaywrightError(self.launch_error)
        self.browser.launch_kwargs = kwargs
        return self.browser


class FakePlaywright:
    def __init__(self, browser: FakeBrowser, launch_error: Optional[str] = None) -> None:
        self.chromium = FakeBrowserType(browser, launch_error)
        self.stop_calls = 0

    async def stop(self) -> None:
        self.stop_calls += 1


class FakePlaywrightStarter:
    def __init__(self, playwright: FakePlaywright) -> None:
        self._playwright = playwright

    async def start(self) -> FakePlaywright:
        return self._playwright


def booking_site(*, populate_slots: bool = True) -> FakeSite:
    """The booking wizard with every panel already rendered."""
    site = FakeSite()
    for selector in (
        '[data-service-type="90min_massage"]',
        "#next-btn",
        ".calendar-day.available",
        "#booking-time",
        "#contact-info",
        "#client-name",
        "#client-email",
        "#client-phone",
        "#session-notes",
        "#payment-method-cash",
        "#payment-method-card",
        "#confirm-booking-btn",
    ):
        site.add(selector)
    if populate_slots:
        site.add('#booking-time option:not([value=""])', FakeElement(label="10:00"), FakeElement(label="11:00"))
    site.on_click["#confirm-booking-btn"] = lambda s: s.add("#thank-you-content")
    return site


def fast_flow(flow, *, timeout_ms: int = 60):
    """Same flow with short timeouts and no backoff so failures surface quickly."""
    from dataclasses import replace

    from bookingflow.runner import Flow

    return Flow(
        name=flow.name,
        steps=tuple(replace(step, timeout_ms=timeout_ms, backoff_ms=0) for step in flow.steps),
        description=flow.description,
        start_path=flow.start_path,
    )
