"""
Dismissal Executor

Turns matched elements and known overlay shapes into safe clicks:

  - pointer-level clicks (move/down/up) at computed centers
  - a navigation lock around every click so an unknown element cannot take
    the page away
  - single-shot passes: click the first unique match, then re-scan
  - polite dismissal of named overlays, falling back to remove-and-block
  - a close-button sweep across the document, shadow roots and frames
  - "read more"/"load more" expansion with a before/after verification

Element-level failures are logged and absorbed; they never abort a job.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import ExecutorConfig, KnownOverlay
from .errors import FrameTimeoutError
from .matcher import ElementMatcher, MatchedElement
from ..utils.polling import CancelToken, poll_until


OUTCOME_ABSENT = "absent"
OUTCOME_DISMISSED = "dismissed"
OUTCOME_REMOVED = "removed"
OUTCOME_FAILED = "failed"

# Page-coordinate distance under which a re-scanned match is the element already clicked
SAME_ELEMENT_PX = 4.0

NAV_LOCK_INSTALL = """
() => {
  if (window.__unveilNavLock) return false;
  const onClick = (e) => {
    const t = e.target;
    const link = t && t.closest ? t.closest('a[href], area[href]') : null;
    if (link) e.preventDefault();
  };
  const onSubmit = (e) => e.preventDefault();
  const onBeforeUnload = (e) => { e.stopImmediatePropagation(); };
  window.addEventListener('click', onClick, true);
  window.addEventListener('submit', onSubmit, true);
  window.addEventListener('beforeunload', onBeforeUnload, true);
  window.__unveilNavLock = {onClick, onSubmit, onBeforeUnload, prev: window.onbeforeunload};
  window.onbeforeunload = null;
  return true;
}
"""

NAV_LOCK_REMOVE = """
() => {
  const lock = window.__unveilNavLock;
  if (!lock) return false;
  window.removeEventListener('click', lock.onClick, true);
  window.removeEventListener('submit', lock.onSubmit, true);
  window.removeEventListener('beforeunload', lock.onBeforeUnload, true);
  window.onbeforeunload = lock.prev || null;
  delete window.__unveilNavLock;
  return true;
}
"""

OVERLAY_PRESENT = """
(sel) => {
  const el = document.querySelector(sel);
  if (!el || !el.isConnected) return false;
  const st = window.getComputedStyle(el);
  const r = el.getBoundingClientRect();
  return st.display !== 'none' && st.visibility !== 'hidden' && r.width > 0 && r.height > 0;
}
"""

OVERLAY_DISMISS_TARGET = """
(opts) => {
  const box = document.querySelector(opts.container);
  if (!box) return null;
  const btn = box.querySelector(opts.dismiss);
  if (!btn) return null;
  btn.scrollIntoView({block: 'center', inline: 'center'});
  const r = btn.getBoundingClientRect();
  if (r.width <= 0 || r.height <= 0) return null;
  return {x: r.left + r.width / 2, y: r.top + r.height / 2};
}
"""

REMOVE_AND_BLOCK = """
(opts) => {
  let removed = 0;
  document.querySelectorAll(opts.selector).forEach((el) => { el.remove(); removed++; });
  const id = 'unveil-block-' + opts.name;
  if (!document.getElementById(id)) {
    const style = document.createElement('style');
    style.id = id;
    style.textContent = opts.selector + ' { display: none !important; visibility: hidden !important; }';
    (document.head || document.documentElement).appendChild(style);
  }
  return removed;
}
"""

CLOSE_SWEEP_MARK = """
(opts) => {
  const sels = opts.selectors.join(',');
  const visible = (el) => {
    const st = window.getComputedStyle(el);
    const r = el.getBoundingClientRect();
    return st.display !== 'none' && st.visibility !== 'hidden' &&
      parseFloat(st.opacity || '1') > 0 && r.width > 0 && r.height > 0;
  };
  const roots = [document];
  const walk = (root) => {
    root.querySelectorAll('*').forEach((el) => {
      if (el.shadowRoot) { roots.push(el.shadowRoot); walk(el.shadowRoot); }
    });
  };
  walk(document);
  for (const root of roots) {
    root.querySelectorAll('[data-unveil-close]').forEach((el) => el.removeAttribute('data-unveil-close'));
  }
  for (const root of roots) {
    for (const el of root.querySelectorAll(sels)) {
      if (!visible(el)) continue;
      const text = (el.textContent || '').trim();
      if (text.length > opts.maxText) continue;
      el.setAttribute('data-unveil-close', '1');
      return {tag: el.tagName.toLowerCase(), label: el.getAttribute('aria-label') || text.slice(0, 40)};
    }
  }
  return null;
}
"""

CLOSE_SWEEP_DISPATCH = """
() => {
  const find = (root) => {
    const hit = root.querySelector('[data-unveil-close]');
    if (hit) return hit;
    for (const el of root.querySelectorAll('*')) {
      if (el.shadowRoot) { const inner = find(el.shadowRoot); if (inner) return inner; }
    }
    return null;
  };
  const el = find(document);
  if (!el) return false;
  el.dispatchEvent(new MouseEvent('click', {bubbles: true, cancelable: true, view: window}));
  return true;
}
"""

COUNT_BLOCKS = "(sel) => document.querySelectorAll(sel).length"

SCROLL_TO_POINT = """
(p) => {
  window.scrollTo(Math.max(0, p.x - window.innerWidth / 2), Math.max(0, p.y - window.innerHeight / 2));
  return {x: window.scrollX, y: window.scrollY, w: window.innerWidth, h: window.innerHeight};
}
"""


def _same_element(a: MatchedElement, b: MatchedElement) -> bool:
    return (a.text == b.text and a.frame_index == b.frame_index
            and abs(a.x - b.x) <= SAME_ELEMENT_PX and abs(a.y - b.y) <= SAME_ELEMENT_PX)


@dataclass
class ExpansionResult:
    clicked: Optional[str] = None
    before: int = 0
    after: int = 0

    @property
    def verified(self) -> bool:
        return self.clicked is not None and self.after > self.before


@dataclass
class DismissalReport:
    passes: int = 0
    clicked: List[MatchedElement] = field(default_factory=list)
    overlays: Dict[str, str] = field(default_factory=dict)
    close_sweep: bool = False


class DismissalExecutor:
    """Safely triggers dismissal of matched or known obstructive elements."""

    def __init__(self, config: Optional[ExecutorConfig] = None, cancel: Optional[CancelToken] = None):
        self.config = config or ExecutorConfig()
        self.cancel = cancel
        self.logger = logging.getLogger(__name__)

    # Navigation lock

    @contextmanager
    def navigation_lock(self, session, frame=None):
        """
        Suppress link/form navigation and beforeunload prompts around a click.

        Waits the settle time after the body runs, then removes the
        interceptor. If the page navigated anyway, it is sent back.
        """
        url_before = session.url.split("#", 1)[0]
        targets = [None] if frame is None else [None, frame]
        installed = []
        for target in targets:
            try:
                session.evaluate(NAV_LOCK_INSTALL, None, frame=target)
                installed.append(target)
            except Exception as e:
                self.logger.debug(f"Navigation lock not installed: {e}")
        try:
            yield
            session.wait(self.config.nav_lock_settle_ms)
        finally:
            for target in installed:
                try:
                    session.evaluate(NAV_LOCK_REMOVE, None, frame=target)
                except Exception as e:
                    self.logger.debug(f"Navigation lock removal skipped: {e}")
            url_after = session.url.split("#", 1)[0]
            if url_before and url_after != url_before:
                self.logger.warning(f"Click navigated to {url_after}; going back")
                session.go_back()

    # Clicking

    def _frame_for(self, session, match: MatchedElement):
        if match.frame_index <= 0:
            return None
        frames = session.frames()
        if match.frame_index < len(frames):
            return frames[match.frame_index]
        return None

    def _bring_into_view(self, session, match: MatchedElement) -> Tuple[float, float]:
        x, y = match.viewport_point()
        if match.frame_index > 0:
            return x, y
        state = session.scroll_state()
        width, height = state.get("w", 0), state.get("h", 0)
        if width and height and (x < 0 or y < 0 or x > width or y > height):
            state = session.evaluate(SCROLL_TO_POINT, {"x": match.x, "y": match.y})
            x, y = match.x - state["x"], match.y - state["y"]
        return x, y

    def click_match(self, session, match: MatchedElement) -> bool:
        """Pointer-click one matched element inside a navigation lock."""
        cfg = self.config
        try:
            x, y = self._bring_into_view(session, match)
            self.logger.info(f"Clicking <{match.tag}> \"{match.raw_text[:60]}\" at ({x:.0f}, {y:.0f})")
            with self.navigation_lock(session, self._frame_for(session, match)):
                session.click_at(x, y, steps=cfg.move_steps, press_delay_ms=cfg.press_delay_ms)
            session.wait(cfg.click_delay_ms)
            return True
        except Exception as e:
            self.logger.warning(f"Failed to click \"{match.raw_text[:60]}\": {e}")
            return False

    def dismiss_pass(self, session, matcher: ElementMatcher) -> DismissalReport:
        """
        Match-and-click until nothing new matches or the pass limit is hit.

        Only the first unique match is clicked per pass; the page is re-scanned
        before the next click since the previous one may have removed or moved
        the remaining candidates. A match that is the element already clicked
        (same text, frame and position) is not clicked again, but a new control
        with the same text, such as a second "Close", is.
        """
        report = DismissalReport()
        attempted: List[MatchedElement] = []
        for _ in range(max(1, self.config.max_passes)):
            if self.cancel is not None and self.cancel.cancelled:
                break
            matches = [m for m in matcher.scan(session)
                       if not any(_same_element(m, seen) for seen in attempted)]
            if not matches:
                break
            report.passes += 1
            target = matches[0]
            attempted.append(target)
            if self.click_match(session, target):
                report.clicked.append(target)
        self.logger.info(f"Dismissal passes: {report.passes}, clicked: {len(report.clicked)}")
        return report

    # Known overlays

    def overlay_present(self, session, selector: str) -> bool:
        try:
            return bool(session.evaluate(OVERLAY_PRESENT, selector))
        except Exception:
            return False

    def remove_and_block(self, session, overlay: KnownOverlay) -> int:
        removed = session.evaluate(REMOVE_AND_BLOCK, {"selector": overlay.container, "name": overlay.name})
        self.logger.info(f"Removed {removed} '{overlay.name}' element(s) and blocked re-insertion")
        return int(removed or 0)

    def dismiss_overlay(self, session, overlay: KnownOverlay) -> str:
        """
        Polite click on the overlay's own dismiss control, then verify.

        Falls back to detaching the container and injecting a style rule
        that hides any re-created copy.

        Returns:
            One of ``absent``, ``dismissed``, ``removed``, ``failed``.
        """
        cfg = self.config
        if not self.overlay_present(session, overlay.container):
            return OUTCOME_ABSENT

        if overlay.dismiss:
            try:
                point = session.evaluate(OVERLAY_DISMISS_TARGET, {
                    "container": overlay.container, "dismiss": overlay.dismiss,
                })
                if point:
                    with self.navigation_lock(session):
                        session.click_at(point["x"], point["y"], steps=cfg.move_steps,
                                         press_delay_ms=cfg.press_delay_ms)
                    gone = poll_until(lambda: not self.overlay_present(session, overlay.container),
                                      timeout_ms=cfg.overlay_wait_ms,
                                      interval_ms=cfg.poll_interval_ms,
                                      cancel=self.cancel)
                    if gone:
                        self.logger.info(f"Dismissed overlay '{overlay.name}'")
                        return OUTCOME_DISMISSED
            except Exception as e:
                self.logger.warning(f"Polite dismissal of '{overlay.name}' failed: {e}")

        if not overlay.block:
            return OUTCOME_FAILED
        try:
            self.remove_and_block(session, overlay)
            return OUTCOME_REMOVED
        except Exception as e:
            self.logger.warning(f"Could not remove overlay '{overlay.name}': {e}")
            return OUTCOME_FAILED

    def dismiss_overlays(self, session, overlays: List[KnownOverlay]) -> Dict[str, str]:
        outcomes = {}
        for overlay in overlays:
            outcomes[overlay.name] = self.dismiss_overlay(session, overlay)
        return outcomes

    # Close-button sweep

    def _click_marked(self, session, frame) -> bool:
        """Layered click on the element marked by the sweep in ``frame``."""
        cfg = self.config
        locator = session.locator("[data-unveil-close]", frame).first
        try:
            box = locator.bounding_box(timeout=cfg.action_timeout_ms)
            if not box:
                raise RuntimeError("no bounding box")
            with self.navigation_lock(session, frame):
                session.click_at(box["x"] + box["width"] / 2, box["y"] + box["height"] / 2,
                                 steps=cfg.move_steps, press_delay_ms=cfg.press_delay_ms)
            return True
        except Exception as e:
            self.logger.debug(f"Pointer click failed, trying element click: {e}")
        try:
            with self.navigation_lock(session, frame):
                locator.click(timeout=cfg.action_timeout_ms)
            return True
        except Exception as e:
            self.logger.debug(f"Element click failed, dispatching DOM event: {e}")
        try:
            with self.navigation_lock(session, frame):
                dispatched = session.evaluate(CLOSE_SWEEP_DISPATCH, None, frame=frame)
            return bool(dispatched)
        except Exception as e:
            self.logger.warning(f"All click strategies failed in close sweep: {e}")
            return False

    def close_button_sweep(self, session) -> bool:
        """
        Click the first visible id/class/aria-label "close" control found in the
        main document, open shadow roots or accessible frames.

        Each frame gets ``frame_budget_ms``; a frame that exceeds it, or has
        been detached, is skipped.
        """
        cfg = self.config
        opts = {"selectors": list(cfg.close_selectors), "maxText": int(cfg.close_max_text_length)}
        main = session.main_frame()
        for index, frame in enumerate(session.frames()):
            target = None if frame == main else frame
            if session.is_detached(target):
                self.logger.debug(f"Close sweep skipped detached frame {index}")
                continue
            try:
                hit = session.evaluate_bounded(CLOSE_SWEEP_MARK, opts, frame=target, timeout_ms=cfg.frame_budget_ms)
            except FrameTimeoutError as e:
                self.logger.warning(f"Close sweep skipped frame {index} after {cfg.frame_budget_ms}ms: {e}")
                continue
            except Exception as e:
                self.logger.debug(f"Close sweep skipped frame {index}: {e}")
                continue
            if not hit:
                continue
            self.logger.info(f"Close sweep hit <{hit.get('tag')}> \"{hit.get('label', '')}\" in frame {index}")
            if self._click_marked(session, target):
                session.wait(cfg.click_delay_ms)
                return True
        return False

    # Expansion

    def count_blocks(self, session) -> int:
        return int(session.evaluate(COUNT_BLOCKS, self.config.content_block_selector) or 0)

    def expand_content(self, session, matcher: ElementMatcher) -> ExpansionResult:
        """
        Click the first "read more"/"load more" control and compare content
        block counts before and after. Best-effort: the result is reported,
        never raised.
        """
        result = ExpansionResult(before=self.count_blocks(session))
        result.after = result.before
        matches = matcher.scan(session)
        if not matches:
            self.logger.debug("No expansion controls found")
            return result
        target = matches[0]
        if self.click_match(session, target):
            result.clicked = target.raw_text
            session.wait(self.config.expansion_wait_ms)
            result.after = self.count_blocks(session)
        if result.verified:
            self.logger.info(f"Expanded content: {result.before} -> {result.after} blocks")
        else:
            self.logger.info(f"Expansion click did not add content blocks ({result.before} -> {result.after})")
        return result
