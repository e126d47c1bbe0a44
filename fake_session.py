"""
In-memory stand-in for unveil.core.browser.BrowserSession.

A FakeSession holds a tiny page model (elements per frame, named overlays,
paragraph count, scroll geometry) and answers the scripts the matcher,
executor, sanitizer and capture service evaluate. Element boxes are in page
coordinates of their frame. Pointer clicks hit the element whose box
contains the point and run its ``on_click`` callback.
"""

import os
import time
from typing import Any, Callable, Dict, List, Optional

from unveil.core import executor as ex
from unveil.core import sanitizer as san
from unveil.core.capture import PAGE_METRICS
from unveil.core.errors import FrameTimeoutError, NavigationError
from unveil.core.matcher import COLLECT_SCRIPT


class FakeElement:
    def __init__(self, tag: str, text: str, left: float = 10, top: float = 10, width: float = 80,
                 height: float = 30, display: str = "inline-block", visibility: str = "visible",
                 opacity: float = 1.0, role: str = "", onclick: bool = False, tab_index: int = -1,
                 on_click: Optional[Callable[["FakeSession", "FakeElement"], None]] = None):
        self.tag = tag
        self.text = text
        self.left = left
        self.top = top
        self.width = width
        self.height = height
        self.display = display
        self.visibility = visibility
        self.opacity = opacity
        self.role = role
        self.onclick = onclick
        self.tab_index = tab_index if tab_index != -1 or tag not in ("a", "button", "input") else 0
        self.on_click = on_click
        self.clicks = 0

    def descriptor(self, scroll_x: float, scroll_y: float) -> Dict[str, Any]:
        return {
            "tag": self.tag, "text": self.text, "textLength": len(self.text),
            "onclick": self.onclick, "role": self.role, "tabIndex": self.tab_index,
            "display": self.display, "visibility": self.visibility, "opacity": self.opacity,
            "left": self.left - scroll_x, "top": self.top - scroll_y,
            "width": self.width, "height": self.height,
            "scrollX": scroll_x, "scrollY": scroll_y,
        }

    def contains(self, x: float, y: float) -> bool:
        return self.left <= x <= self.left + self.width and self.top <= y <= self.top + self.height


class FakeFrame:
    def __init__(self, url: str = "https://example.com/", offset=(0.0, 0.0), blocked: bool = False):
        self.url = url
        self.offset = offset
        self.blocked = blocked
        self.detached = False
        # Simulated time the frame takes to answer a bounded evaluation
        self.latency_ms = 0
        self.close_hit: Optional[Dict[str, str]] = None
        self.elements: List[FakeElement] = []


class FakeOverlay:
    def __init__(self, container: str, dismiss_works: bool = True, point=(700.0, 850.0)):
        self.container = container
        self.dismiss_works = dismiss_works
        self.point = point


class FakeLocator:
    def __init__(self, session: "FakeSession", selector: str):
        self.session = session
        self.selector = selector

    @property
    def first(self):
        return self

    def bounding_box(self, timeout=None):
        return self.session.close_box

    def click(self, timeout=None):
        self.session.events.append(("locator_click", self.selector))


class FakeSession:
    def __init__(self, url: str = "https://example.com/news/story", title: str = "Story"):
        self._url = url
        self.title = title
        self.main = FakeFrame(url)
        self.extra_frames: List[FakeFrame] = []
        self.overlays: Dict[str, FakeOverlay] = {}
        self.paragraphs = 3
        self.scroll_x = 0.0
        self.scroll_y = 0.0
        self.viewport = (1440, 900)
        self.page_height = 3000
        self.history: List[str] = [url]
        self.events: List[Any] = []
        self.waits: List[int] = []
        self.failing_scripts: Dict[str, Exception] = {}
        self.nav_locks = 0
        self.close_hit: Optional[Dict[str, str]] = None
        self.close_box = None
        self.http_status = 200
        self.fail_navigation = False

    # Page model helpers

    def add(self, element: FakeElement, frame: Optional[FakeFrame] = None) -> FakeElement:
        (frame or self.main).elements.append(element)
        return element

    def remove(self, element: FakeElement) -> None:
        for frame in [self.main] + self.extra_frames:
            if element in frame.elements:
                frame.elements.remove(element)

    def add_frame(self, url: str, offset=(0.0, 0.0), blocked: bool = False) -> FakeFrame:
        frame = FakeFrame(url, offset, blocked)
        self.extra_frames.append(frame)
        return frame

    def fail_script(self, script: str, error: Exception) -> None:
        self.failing_scripts[script] = error

    # Navigation

    @property
    def url(self) -> str:
        return self._url

    def navigate(self, url: str, timeout_ms=None):
        if self.fail_navigation:
            raise NavigationError(f"Failed to load {url}: net::ERR_NAME_NOT_RESOLVED", stage="navigate")
        if self.http_status >= 400:
            raise NavigationError(f"HTTP {self.http_status} for {url}", stage="navigate")
        self._url = url
        self.main.url = url
        self.history.append(url)
        return self.http_status

    def navigate_away(self, url: str) -> None:
        self._url = url
        self.history.append(url)

    def go_back(self, timeout_ms: int = 5000) -> bool:
        if len(self.history) > 1:
            self.history.pop()
            self._url = self.history[-1]
            self.events.append(("go_back", self._url))
            return True
        return False

    def wait_for_network_idle(self, timeout_ms: int) -> bool:
        self.events.append(("network_idle", timeout_ms))
        return True

    def wait(self, ms: int) -> None:
        self.waits.append(ms)

    # Frames and scripts

    def frames(self) -> List[FakeFrame]:
        return [self.main] + self.extra_frames

    def main_frame(self) -> FakeFrame:
        return self.main

    def frame_offset(self, frame) -> tuple:
        if frame is None or frame is self.main:
            return (0.0, 0.0)
        return frame.offset

    def locator(self, selector: str, frame=None) -> FakeLocator:
        return FakeLocator(self, selector)

    def is_detached(self, frame) -> bool:
        return frame is not None and frame.detached

    def evaluate_bounded(self, script: str, arg: Any = None, frame=None, timeout_ms: int = 1500) -> Any:
        target = frame if frame is not None else self.main
        self.events.append(("bounded", target.url, timeout_ms))
        if target.latency_ms > timeout_ms:
            time.sleep(timeout_ms / 1000.0)
            raise FrameTimeoutError(f"Frame did not answer within {timeout_ms}ms", stage="evaluate")
        time.sleep(target.latency_ms / 1000.0)
        return self.evaluate(script, arg, frame=frame)

    def evaluate(self, script: str, arg: Any = None, frame=None) -> Any:
        if script in self.failing_scripts:
            raise self.failing_scripts[script]
        target = frame if frame is not None else self.main
        if getattr(target, "blocked", False):
            raise RuntimeError("Blocked a frame with origin from accessing a cross-origin frame")

        if script == COLLECT_SCRIPT:
            # Only the top document scrolls; frame content keeps its own origin
            if target is self.main:
                return [e.descriptor(self.scroll_x, self.scroll_y) for e in target.elements]
            return [e.descriptor(0.0, 0.0) for e in target.elements]
        if script == ex.NAV_LOCK_INSTALL:
            self.nav_locks += 1
            return True
        if script == ex.NAV_LOCK_REMOVE:
            self.nav_locks -= 1
            return True
        if script == ex.OVERLAY_PRESENT:
            return arg in self.overlays
        if script == ex.OVERLAY_DISMISS_TARGET:
            overlay = self.overlays.get(arg["container"])
            if overlay is None:
                return None
            return {"x": overlay.point[0], "y": overlay.point[1]}
        if script == ex.REMOVE_AND_BLOCK:
            removed = 1 if self.overlays.pop(arg["selector"], None) else 0
            self.events.append(("blocked", arg["name"]))
            return removed
        if script == ex.CLOSE_SWEEP_MARK:
            return self.close_hit if target is self.main else target.close_hit
        if script == ex.CLOSE_SWEEP_DISPATCH:
            self.events.append(("dispatch_click",))
            return True
        if script == ex.COUNT_BLOCKS:
            return self.paragraphs
        if script == ex.SCROLL_TO_POINT:
            self.scroll_x = max(0.0, arg["x"] - self.viewport[0] / 2)
            self.scroll_y = max(0.0, arg["y"] - self.viewport[1] / 2)
            return {"x": self.scroll_x, "y": self.scroll_y, "w": self.viewport[0], "h": self.viewport[1]}
        if script == san.REMOVE_SELECTORS:
            self.events.append(("remove_ads", len(arg)))
            return 2
        if script == san.EAGER_IMAGES:
            return 1
        if script == san.SCROLL_TO:
            self.scroll_y = float(arg)
            self.events.append(("scroll", arg))
            return self.scroll_y
        if script == san.FIX_LAYOUT:
            self.events.append(("fix_layout",))
            return 4
        if script == PAGE_METRICS:
            return {"title": self.title, "width": self.viewport[0], "height": self.page_height}
        if "document.title" in script:
            return self.title
        raise AssertionError(f"Unexpected script: {script[:60]}")

    def content(self) -> str:
        body = "".join(f"<{e.tag}>{e.text}</{e.tag}>" for e in self.main.elements)
        paras = "".join(f"<p>para {i}</p>" for i in range(self.paragraphs))
        return (f"<html><head><title>{self.title}</title>"
                f"<meta http-equiv=\"refresh\" content=\"5;url=/elsewhere\"></head>"
                f"<body>{body}{paras}</body></html>")

    # Input

    def click_at(self, x: float, y: float, steps: int = 5, press_delay_ms=(30, 60)) -> None:
        self.events.append(("click", round(x), round(y)))
        for overlay_key, overlay in list(self.overlays.items()):
            if (round(x), round(y)) == (round(overlay.point[0]), round(overlay.point[1])):
                if overlay.dismiss_works:
                    del self.overlays[overlay_key]
                return
        for frame in self.frames():
            if frame is self.main:
                px, py = x + self.scroll_x, y + self.scroll_y
            else:
                ox, oy = self.frame_offset(frame)
                px, py = x - ox, y - oy
            for element in list(frame.elements):
                if element.contains(px, py):
                    element.clicks += 1
                    if element.on_click:
                        element.on_click(self, element)
                    return

    def scroll_state(self) -> Dict[str, float]:
        return {"x": self.scroll_x, "y": self.scroll_y, "w": self.viewport[0], "h": self.viewport[1],
                "sh": self.page_height}

    # Rendering

    def screenshot(self, path: str, full_page: bool = True) -> None:
        self.events.append(("screenshot",))
        with open(path, "wb") as f:
            f.write(b"\x89PNG\r\n\x1a\nfake")

    def emulate_media(self, media: str) -> None:
        self.events.append(("media", media))

    def pdf(self, path: str, page_format: str = "A4", print_background: bool = True, margin=None) -> None:
        self.events.append(("pdf", page_format, print_background))
        with open(path, "wb") as f:
            f.write(b"%PDF-1.4\n% fake\n")

    def user_agent(self) -> str:
        return "FakeAgent/1.0"

    def close(self) -> None:
        self.events.append(("closed",))


def remove_on_click(session: FakeSession, element: FakeElement) -> None:
    session.remove(element)


def writes_file(path: str) -> bool:
    return os.path.exists(path) and os.path.getsize(path) > 0
