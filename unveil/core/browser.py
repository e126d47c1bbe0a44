"""
Browser Capability

Playwright-backed browsing sessions used by the archival pipeline. This is
the only module that talks to Playwright directly; the matcher, executor,
sanitizer and capture components only use the ``BrowserSession`` surface:

  - navigate(url, timeout_ms) -> int | None
  - frames() -> list of frames (outer-to-inner)
  - frame_offset(frame) -> (x, y)
  - evaluate(script, arg, frame=None) / evaluate_bounded(..., timeout_ms)
  - locator(selector, frame=None)
  - click_at(x, y) / wait(ms)
  - screenshot(path) / pdf(path, ...) / content() / user_agent()

Usage:
  with ChromiumLauncher(config) as launcher:
      with launcher.session() as session:
          session.navigate(url)
"""

from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .config import BrowserConfig
from .errors import FrameTimeoutError, NavigationError


# Poll interval for bounded evaluation; the boxed predicate resolves on its first run
BOUNDED_POLL_MS = 50


class BrowserSession:
    """One isolated page (own browser context) owned by a single job."""

    def __init__(self, page, context, config: BrowserConfig):
        self.page = page
        self.context = context
        self.config = config
        self.logger = logging.getLogger(__name__)
        if config.auto_dismiss_dialogs:
            page.on("dialog", self._dismiss_dialog)

    def _dismiss_dialog(self, dialog) -> None:
        try:
            self.logger.debug(f"Dismissing page dialog ({dialog.type}): {dialog.message[:80]}")
            dialog.dismiss()
        except PlaywrightError:
            pass

    # Navigation

    @property
    def url(self) -> str:
        try:
            return self.page.url or ""
        except PlaywrightError:
            return ""

    def navigate(self, url: str, timeout_ms: Optional[int] = None) -> Optional[int]:
        """
        Navigate to ``url`` and wait for the configured load condition.

        Args:
            url: Target URL
            timeout_ms: Navigation timeout; 0 waits indefinitely. Defaults to
                the configured ``navigation_timeout_ms``.

        Returns:
            HTTP status of the main response, or None when unavailable.

        Raises:
            NavigationError: if the page cannot be loaded
        """
        cfg = self.config
        timeout = cfg.navigation_timeout_ms if timeout_ms is None else timeout_ms
        self.logger.info(f"Navigating: {url} (wait_until={cfg.wait_until}, timeout={timeout}ms)")
        try:
            response = self.page.goto(url, wait_until=cfg.wait_until, timeout=timeout)
        except PlaywrightTimeoutError as e:
            self.logger.warning(f"'{cfg.wait_until}' not reached for {url}; retrying with '{cfg.fallback_wait_until}'")
            fallback_timeout = cfg.fallback_timeout_ms if timeout <= 0 else min(timeout, cfg.fallback_timeout_ms)
            try:
                response = self.page.goto(url, wait_until=cfg.fallback_wait_until, timeout=fallback_timeout)
            except PlaywrightError as e2:
                raise NavigationError(f"Failed to load {url}: {e2}", stage="navigate", original=e2) from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {url}: {e}", stage="navigate", original=e)

        status = response.status if response is not None else None
        if status is not None and status >= 400 and cfg.fail_on_http_error:
            raise NavigationError(f"HTTP {status} for {url}", stage="navigate")

        if cfg.post_load_settle_ms:
            self.wait(cfg.post_load_settle_ms)
        return status

    def go_back(self, timeout_ms: int = 5000) -> bool:
        try:
            self.page.go_back(wait_until="domcontentloaded", timeout=timeout_ms)
            return True
        except PlaywrightError as e:
            self.logger.debug(f"go_back failed: {e}")
            return False

    def wait_for_network_idle(self, timeout_ms: int) -> bool:
        try:
            self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    def wait(self, ms: int) -> None:
        if ms > 0:
            self.page.wait_for_timeout(ms)

    # Frames and scripts

    def frames(self) -> List[Any]:
        return list(self.page.frames)

    def main_frame(self):
        return self.page.main_frame

    def frame_offset(self, frame) -> Tuple[float, float]:
        """Viewport offset of a frame's top-left corner (0, 0 for the main frame)."""
        if frame is None or frame == self.page.main_frame:
            return (0.0, 0.0)
        element = frame.frame_element()
        box = element.bounding_box()
        if not box:
            return (0.0, 0.0)
        return (float(box["x"]), float(box["y"]))

    def is_detached(self, frame) -> bool:
        return frame is not None and frame.is_detached()

    def evaluate(self, script: str, arg: Any = None, frame=None) -> Any:
        """
        Evaluate a JS function expression against a frame (main frame by default).

        Playwright applies no timeout to evaluation, so a script that never
        returns holds the caller until the page is closed. The job watchdog
        only takes effect between stages and steps; use ``evaluate_bounded``
        where a frame may not answer.
        """
        target = frame if frame is not None else self.page
        return target.evaluate(script, arg)

    def evaluate_bounded(self, script: str, arg: Any = None, frame=None, timeout_ms: int = 1500) -> Any:
        """
        Evaluate with a wall-clock limit kept by the Playwright driver.

        The function runs as a ``wait_for_function`` predicate whose result is
        boxed, so even a null result resolves on the first poll. The driver's
        timer fires whether or not the frame's event loop is still busy.

        Raises:
            FrameTimeoutError: the frame did not answer within ``timeout_ms``
        """
        target = frame if frame is not None else self.page.main_frame
        boxed = f"(arg) => ({{value: ({script.strip()})(arg)}})"
        try:
            handle = target.wait_for_function(boxed, arg=arg, polling=BOUNDED_POLL_MS, timeout=max(1, int(timeout_ms)))
        except PlaywrightTimeoutError as e:
            raise FrameTimeoutError(f"Frame did not answer within {timeout_ms}ms", stage="evaluate", original=e)
        try:
            return (handle.json_value() or {}).get("value")
        finally:
            handle.dispose()

    def locator(self, selector: str, frame=None):
        target = frame if frame is not None else self.page
        return target.locator(selector)

    def content(self) -> str:
        return self.page.content()

    # Input synthesis

    def click_at(self, x: float, y: float, steps: int = 5, press_delay_ms: Tuple[int, int] = (30, 60)) -> None:
        """Full pointer sequence (move, down, short pause, up) at viewport coordinates."""
        mouse = self.page.mouse
        mouse.move(x, y, steps=max(1, steps))
        mouse.down()
        lo, hi = press_delay_ms
        self.wait(random.randint(min(lo, hi), max(lo, hi)))
        mouse.up()

    def scroll_state(self) -> Dict[str, float]:
        return self.page.evaluate(
            "() => ({x: window.scrollX, y: window.scrollY, "
            "w: window.innerWidth, h: window.innerHeight, "
            "sh: Math.max(document.body ? document.body.scrollHeight : 0, "
            "document.documentElement ? document.documentElement.scrollHeight : 0)})"
        )

    # Rendering

    def screenshot(self, path: str, full_page: bool = True) -> None:
        self.page.screenshot(path=path, full_page=full_page)

    def emulate_media(self, media: str) -> None:
        self.page.emulate_media(media=media)

    def pdf(self, path: str, page_format: str = "A4", print_background: bool = True,
            margin: Optional[Dict[str, str]] = None) -> None:
        self.page.pdf(path=path, format=page_format, print_background=print_background, margin=margin)

    # Identity

    def user_agent(self) -> str:
        try:
            return self.page.evaluate("() => navigator.userAgent")
        except PlaywrightError:
            return self.config.user_agent

    def close(self) -> None:
        for closable in (self.page, self.context):
            try:
                closable.close()
            except PlaywrightError:
                pass


class ChromiumLauncher:
    """
    Owns the Playwright driver and one Chromium process for a worker's lifetime.

    Each call to ``session()`` opens a fresh browser context, so cookies and
    storage never leak between jobs.
    """

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig()
        self.logger = logging.getLogger(__name__)
        self._playwright = None
        self._browser = None

    def start(self) -> "ChromiumLauncher":
        if self._browser is not None:
            return self
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=self.config.headless,
            args=list(self.config.launch_args),
        )
        self.logger.info(f"Chromium launched (headless={self.config.headless})")
        return self

    def stop(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError:
                pass
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
            self.logger.info("Chromium stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @contextmanager
    def session(self, config: Optional[BrowserConfig] = None) -> Iterator[BrowserSession]:
        cfg = config or self.config
        if self._browser is None:
            self.start()
        context = self._browser.new_context(
            viewport=dict(cfg.viewport),
            device_scale_factor=cfg.device_scale_factor,
            user_agent=cfg.user_agent,
            extra_http_headers=dict(cfg.extra_headers) or None,
        )
        page = context.new_page()
        if cfg.default_timeout_ms > 0:
            page.set_default_timeout(cfg.default_timeout_ms)
        session = BrowserSession(page, context, cfg)
        try:
            yield session
        finally:
            session.close()
