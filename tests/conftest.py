"""Shared fixtures: a Playwright-shaped fake engine, a fake asset fetcher and test settings."""

from __future__ import annotations

from io import BytesIO
import threading
import time
from typing import List, Optional

from PIL import Image
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
import pytest

from pdfbatch_service.asset_cache import AssetCache
from pdfbatch_service.config import Settings
from pdfbatch_service.render_session import RenderSession

LOGO_URL = "https://cdn.example.com/brand/logo.png"

# Markers understood by FakePage.
RENDER_ERROR = "<!--render-error-->"
LOAD_TIMEOUT = "<!--load-timeout-->"
PDF_ERROR = "<!--pdf-error-->"
CRASH = "<!--crash-->"
SLOW = "<!--slow-->"
STUCK_EXPORT = "<!--stuck-export-->"
NEVER_LOADS = "never-loads"


def make_png() -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (2, 2), (255, 0, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.content = ""
        self.media: Optional[str] = None
        self.wait_until: Optional[str] = None
        self.wait_timeouts: List[float] = []
        self.function_timeouts: List[float] = []
        self.pdf_calls: List[dict] = []
        self.closed = False

    def emulate_media(self, media=None):
        self.media = media

    def _stall_if_image_never_loads(self, timeout):
        # Chromium holds the `load` event until every image settles.
        if NEVER_LOADS in self.content:
            time.sleep(timeout / 1000)
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    def set_content(self, html, wait_until=None, timeout=None):
        self.content = html
        self.wait_until = wait_until
        if wait_until == "load":
            self._stall_if_image_never_loads(timeout)
        if CRASH in html:
            self.browser.connected = False
            raise PlaywrightError("Target page, context or browser has been closed")
        if RENDER_ERROR in html:
            raise PlaywrightError("Protocol error (Page.setContent): malformed document")
        if LOAD_TIMEOUT in html:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")
        if SLOW in html:
            time.sleep(0.2)

    def wait_for_load_state(self, state="load", timeout=None):
        self.wait_timeouts.append(timeout)
        if state == "load":
            self._stall_if_image_never_loads(timeout)

    def wait_for_function(self, expression, timeout=None):
        self.function_timeouts.append(timeout)
        self._stall_if_image_never_loads(timeout)
        return True

    def pdf(self, **options):
        self.pdf_calls.append(options)
        if PDF_ERROR in self.content:
            raise PlaywrightError("Printing failed")
        if STUCK_EXPORT in self.content:
            time.sleep(3.0)
        return b"%PDF-1.4\n" + self.content.encode("utf-8")

    def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", user_agent=None):
        self.browser = browser
        self.user_agent = user_agent
        self.pages: List[FakePage] = []
        self.closed = False

    def new_page(self):
        if not self.browser.connected:
            raise PlaywrightError("Browser has been closed")
        page = FakePage(self.browser)
        self.pages.append(page)
        return page

    def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.connected = True
        self.contexts: List[FakeContext] = []
        self.closed = False

    def new_context(self, user_agent=None):
        context = FakeContext(self, user_agent=user_agent)
        self.contexts.append(context)
        return context

    def is_connected(self):
        return self.connected and not self.closed

    def close(self):
        self.closed = True


class FakeDriver:
    def __init__(self):
        self.stops = 0

    def stop(self):
        self.stops += 1


class FakeEngine:
    """Stands in for `launch_chromium`; records every launch."""

    def __init__(self):
        self.fail_start: Optional[BaseException] = None
        self.browsers: List[FakeBrowser] = []
        self.drivers: List[FakeDriver] = []
        self._lock = threading.Lock()

    @property
    def launches(self) -> int:
        return len(self.browsers)

    def launcher(self, settings):
        if self.fail_start is not None:
            raise self.fail_start
        with self._lock:
            browser, driver = FakeBrowser(), FakeDriver()
            self.browsers.append(browser)
            self.drivers.append(driver)
        return driver, browser

    def pages(self) -> List[FakePage]:
        return [p for b in self.browsers for c in b.contexts for p in c.pages]


class FakeFetcher:
    def __init__(self, payload: bytes = b"", content_type: Optional[str] = "image/png", delay: float = 0.0):
        self.payload = payload or make_png()
        self.content_type = content_type
        self.delay = delay
        self.error: Optional[BaseException] = None
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, url):
        with self._lock:
            self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload, self.content_type


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        logo_url=LOGO_URL,
        warm_page_wait_ms=50,
        fresh_page_wait_ms=100,
        item_timeout_seconds=1,
        engine_start_timeout_seconds=1,
        batch_deadline_seconds=30,
        deadline_reserve_seconds=1,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def asset_cache(settings: Settings, fetcher: FakeFetcher, clock: FakeClock) -> AssetCache:
    return AssetCache(settings, fetcher=fetcher, clock=clock)


@pytest.fixture
def session_factory(settings: Settings, engine: FakeEngine):
    def _factory(name: str) -> RenderSession:
        return RenderSession(settings, launcher=engine.launcher, name=name)

    return _factory
