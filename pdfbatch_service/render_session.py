"""
Chromium rendering session driven through Playwright's sync API.

A session owns one browser process, one browser context and one page that is
reused across items. Playwright sync objects are bound to the thread that
created them, so a session must be opened, used and closed on one thread.

State machine:
    UNOPENED -> STARTING -> READY -> (RENDERING -> READY)* -> CLOSING -> CLOSED
    STARTING -> CLOSED on startup failure; any state -> CLOSING when the
    browser process goes away.
"""

from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
import time
from typing import Any, Callable, Optional, Tuple

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from . import config
from .exceptions import EngineCrashedError, EngineStartError, RenderError, RenderTimeoutError

logger = logging.getLogger(__name__)

# Fonts report ready and every image reached a terminal state.
# `img.complete` is true for loaded and for broken images alike.
RESOURCES_SETTLED_JS = """() => {
  const fontsReady = !document.fonts || document.fonts.status === 'loaded';
  const images = Array.from(document.images || []);
  return fontsReady && images.every((img) => img.complete);
}"""

PDF_OPTIONS = {
    "format": "A4",
    "print_background": True,
    "prefer_css_page_size": True,
    "margin": {"top": "0", "right": "0", "bottom": "0", "left": "0"},
}

Launcher = Callable[[config.Settings], Tuple[Any, Any]]


class SessionState(str, Enum):
    UNOPENED = "unopened"
    STARTING = "starting"
    READY = "ready"
    RENDERING = "rendering"
    CLOSING = "closing"
    CLOSED = "closed"


def launch_chromium(settings: config.Settings) -> Tuple[Any, Any]:
    """
    Start the Playwright driver and launch Chromium.

    Returns the `(driver, browser)` pair; the driver must be stopped after the
    browser is closed.
    """
    executable = settings.chromium_executable_path
    if executable is not None and not Path(executable).exists():
        raise EngineStartError(f"Chromium executable not found at {executable}")

    try:
        driver = sync_playwright().start()
    except PlaywrightError as exc:
        raise EngineStartError(f"Playwright driver failed to start: {exc}") from exc

    try:
        browser = driver.chromium.launch(
            executable_path=str(executable) if executable else None,
            args=list(settings.chromium_args),
            headless=settings.chromium_headless,
            timeout=settings.engine_start_timeout_seconds * 1000,
        )
    except PlaywrightError as exc:
        driver.stop()
        raise EngineStartError(f"Chromium failed to start: {exc}") from exc
    return driver, browser


class RenderSession:
    """One browser process rendering HTML documents to PDF bytes, one at a time."""

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        launcher: Optional[Launcher] = None,
        name: str = "session",
    ):
        self.settings = settings or config.get_settings()
        self.name = name
        self.state = SessionState.UNOPENED
        self._launcher = launcher or launch_chromium
        self._driver: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._page_warm = False

    def __enter__(self) -> "RenderSession":
        if self.state is SessionState.UNOPENED:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_usable(self) -> bool:
        return self.state is SessionState.READY

    def open(self) -> "RenderSession":
        """
        Launch the engine and prepare a page.

        Raises:
            EngineStartError: when the browser cannot be located or started.
        """
        if self.state is not SessionState.UNOPENED:
            raise RuntimeError(f"{self.name} cannot be opened from state {self.state.value}")

        self.state = SessionState.STARTING
        started = time.monotonic()
        try:
            self._driver, self._browser = self._launcher(self.settings)
            self._context = self._browser.new_context(user_agent=self.settings.user_agent)
            self._page = self._context.new_page()
        except EngineStartError:
            self._teardown()
            self.state = SessionState.CLOSED
            raise
        except Exception as exc:  # noqa: BLE001
            self._teardown()
            self.state = SessionState.CLOSED
            raise EngineStartError(f"Rendering engine did not become ready: {exc}") from exc

        self._page_warm = False
        self.state = SessionState.READY
        logger.info("%s ready in %.2fs", self.name, time.monotonic() - started)
        return self

    def render(self, html: str, index: int) -> bytes:
        """
        Render one document to PDF bytes.

        The page is switched to print media, loaded with `html`, given a
        bounded wait for fonts and images, then exported with fixed A4
        options.

        Raises:
            RenderTimeoutError: when loading the content exceeds the item timeout.
            EngineCrashedError: when the browser went away; the session is unusable.
            RenderError: for any other load or export failure.
        """
        if self.state is not SessionState.READY:
            raise EngineCrashedError(
                index, RuntimeError(f"{self.name} is {self.state.value}, not ready")
            )

        self.state = SessionState.RENDERING
        page = self._page
        started = time.monotonic()
        try:
            page.emulate_media(media="print")
            page.set_content(
                html,
                wait_until="domcontentloaded",
                timeout=self.settings.item_timeout_seconds * 1000,
            )
            self._wait_for_resources(page, index)
            pdf_bytes = page.pdf(**PDF_OPTIONS)
        except PlaywrightTimeoutError as exc:
            self._recover(index, exc)
            raise RenderTimeoutError(index, exc) from exc
        except Exception as exc:  # noqa: BLE001
            self._recover(index, exc)
            raise RenderError(index, exc) from exc

        self._page_warm = True
        self.state = SessionState.READY
        logger.debug(
            "%s rendered item %d (%d bytes) in %.2fs",
            self.name,
            index,
            len(pdf_bytes),
            time.monotonic() - started,
        )
        return pdf_bytes

    def _wait_for_resources(self, page: Any, index: int) -> bool:
        """
        Race the page's `load` event and the fonts/images readiness predicate
        against one wait ceiling shared by both.

        Content is set on `domcontentloaded`, so an image that never answers
        holds back `load` here rather than the content load itself.

        Returns True when resources settled, False when the ceiling won.
        """
        ceiling_ms = config.wait_ceiling_ms(self._page_warm, self.settings)
        give_up_at = time.monotonic() + ceiling_ms / 1000
        try:
            page.wait_for_load_state("load", timeout=ceiling_ms)
            remaining_ms = max((give_up_at - time.monotonic()) * 1000, 1)
            page.wait_for_function(RESOURCES_SETTLED_JS, timeout=remaining_ms)
        except PlaywrightTimeoutError:
            logger.warning(
                "%s item %d: fonts/images still pending after %dms, exporting anyway",
                self.name,
                index,
                ceiling_ms,
            )
            return False
        return True

    def _recover(self, index: int, cause: BaseException) -> None:
        """Replace the page after a failed item, or mark the session dead."""
        if self._browser is None or not self._browser.is_connected():
            self.state = SessionState.CLOSING
            logger.error("%s lost its browser while rendering item %d", self.name, index)
            raise EngineCrashedError(index, cause) from cause

        self._close_quietly(self._page, "page")
        try:
            self._page = self._context.new_page()
        except Exception as exc:  # noqa: BLE001
            self.state = SessionState.CLOSING
            logger.error("%s could not open a replacement page: %s", self.name, exc)
            raise EngineCrashedError(index, exc) from exc
        self._page_warm = False
        self.state = SessionState.READY

    def close(self) -> None:
        """Tear down the page, context, browser and driver. Safe to call repeatedly."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSING
        self._teardown()
        self.state = SessionState.CLOSED
        logger.info("%s closed", self.name)

    def _teardown(self) -> None:
        self._close_quietly(self._page, "page")
        self._close_quietly(self._context, "context")
        self._close_quietly(self._browser, "browser")
        if self._driver is not None:
            try:
                self._driver.stop()
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s: stopping Playwright driver failed: %s", self.name, exc)
        self._page = self._context = self._browser = self._driver = None

    def _close_quietly(self, target: Any, label: str) -> None:
        if target is None:
            return
        try:
            target.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s: closing %s failed: %s", self.name, label, exc)


def render_pdf(
    html: str,
    settings: Optional[config.Settings] = None,
    launcher: Optional[Launcher] = None,
) -> bytes:
    """Render a single document in a session of its own."""
    with RenderSession(settings, launcher=launcher, name="single-render") as session:
        return session.render(html, 0)
