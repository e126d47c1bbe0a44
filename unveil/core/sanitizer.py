"""
Sanitization Pipeline

Ordered, idempotent page-mutation stages run once per job before capture:

  1. dismiss_overlays  known overlays, match-and-click passes, close sweep
  2. remove_ads        delete ad wrappers, third-party widgets, tracking scripts
  3. lazy_load         half-viewport scroll to the bottom and back to the top
  4. expand_content    "read more"/"load more" clicks, verified by block count
  5. fix_layout        neutralize fixed/sticky positioning, transforms, overflow

The stage list is configuration. Every stage runs inside its own failure
boundary: an exception is recorded as a StageError, the stage is reported as
skipped, and the next stage still runs.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import (
    STAGE_DISMISS,
    STAGE_EXPAND,
    STAGE_FIX_LAYOUT,
    STAGE_LAZY_LOAD,
    STAGE_REMOVE_ADS,
    MatcherConfig,
    SanitizerConfig,
)
from .errors import StageError
from .executor import DismissalExecutor
from .logger import ErrorTracker
from .matcher import ElementMatcher
from ..utils.polling import CancelToken


REMOVE_SELECTORS = """
(selectors) => {
  let removed = 0;
  for (const sel of selectors) {
    let nodes;
    try { nodes = document.querySelectorAll(sel); } catch (e) { continue; }
    nodes.forEach((el) => { el.remove(); removed++; });
  }
  return removed;
}
"""

EAGER_IMAGES = """
() => {
  let touched = 0;
  document.querySelectorAll('img').forEach((img) => {
    if (img.loading === 'lazy') { img.loading = 'eager'; touched++; }
    const ds = img.getAttribute('data-src');
    if (ds && img.getAttribute('src') !== ds) { img.setAttribute('src', ds); touched++; }
    const dss = img.getAttribute('data-srcset');
    if (dss && !img.getAttribute('srcset')) { img.setAttribute('srcset', dss); touched++; }
  });
  return touched;
}
"""

SCROLL_TO = "(y) => { window.scrollTo(0, y); return window.scrollY; }"

FIX_LAYOUT = """
() => {
  const id = 'unveil-layout-fix';
  if (!document.getElementById(id)) {
    const style = document.createElement('style');
    style.id = id;
    style.textContent = [
      'html, body { background: #fff !important; overflow: visible !important;',
      '  height: auto !important; max-height: none !important; transform: none !important; }',
      'body { position: static !important; }',
      '* { animation: none !important; transition: none !important; }',
    ].join('\\n');
    (document.head || document.documentElement).appendChild(style);
  }
  let changed = 0;
  document.querySelectorAll('body *').forEach((el) => {
    const st = window.getComputedStyle(el);
    if (st.position === 'fixed' || st.position === 'sticky') {
      el.style.setProperty('position', 'static', 'important');
      changed++;
    }
    if (st.transform && st.transform !== 'none') {
      el.style.setProperty('transform', 'none', 'important');
      changed++;
    }
    if (st.overflow === 'hidden' && el.scrollHeight > el.clientHeight + 1) {
      el.style.setProperty('overflow', 'visible', 'important');
      changed++;
    }
  });
  document.documentElement.classList.remove('no-scroll', 'modal-open', 'overflow-hidden');
  if (document.body) document.body.classList.remove('no-scroll', 'modal-open', 'overflow-hidden');
  return changed;
}
"""


@dataclass
class StageReport:
    name: str
    ok: bool = True
    skipped: bool = False
    duration_ms: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class PipelineReport:
    stages: List[StageReport] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [s.name for s in self.stages if not s.ok]

    def stage(self, name: str) -> Optional[StageReport]:
        for s in self.stages:
            if s.name == name:
                return s
        return None


class SanitizationPipeline:
    """
    Runs the configured stages against one live session.

    Args:
        config: Stage list, overlay data, ad selectors and lazy-load timing
        matcher_config: Dismissal term configuration
        expansion_config: Matcher configuration for expansion controls
        executor: Dismissal executor (shared timing configuration)
        tracker: Records stage failures as warnings
    """

    def __init__(self,
                 config: Optional[SanitizerConfig] = None,
                 matcher_config: Optional[MatcherConfig] = None,
                 expansion_config: Optional[MatcherConfig] = None,
                 executor: Optional[DismissalExecutor] = None,
                 tracker: Optional[ErrorTracker] = None,
                 cancel: Optional[CancelToken] = None):
        self.config = config or SanitizerConfig()
        self.matcher = ElementMatcher(matcher_config)
        self.expansion_matcher = ElementMatcher(expansion_config) if expansion_config else None
        self.executor = executor or DismissalExecutor(cancel=cancel)
        self.tracker = tracker or ErrorTracker()
        self.cancel = cancel
        self.logger = logging.getLogger(__name__)
        self._stages: Dict[str, Callable[[Any], Dict[str, Any]]] = {
            STAGE_DISMISS: self.dismiss_overlays,
            STAGE_REMOVE_ADS: self.remove_ads,
            STAGE_LAZY_LOAD: self.lazy_load,
            STAGE_EXPAND: self.expand_content,
            STAGE_FIX_LAYOUT: self.fix_layout,
        }

    def run(self, session, url: str = None, progress: Optional[Callable[[str], None]] = None) -> PipelineReport:
        report = PipelineReport()
        for name in self.config.stages:
            if self.cancel is not None and self.cancel.cancelled:
                report.stages.append(StageReport(name=name, ok=True, skipped=True))
                continue
            if progress:
                progress(name)
            report.stages.append(self.run_stage(session, name, url))
        failed = report.failed
        if failed:
            self.logger.warning(f"Pipeline finished with {len(failed)} skipped stage(s): {', '.join(failed)}")
        else:
            self.logger.info("Pipeline finished: all stages succeeded")
        return report

    def run_stage(self, session, name: str, url: str = None) -> StageReport:
        stage = self._stages[name]
        started = time.monotonic()
        self.logger.info(f"Stage: {name}")
        try:
            detail = stage(session) or {}
            return StageReport(name=name, detail=detail,
                               duration_ms=int((time.monotonic() - started) * 1000))
        except Exception as e:
            err = e if isinstance(e, StageError) else StageError(str(e), stage=name, original=e)
            self.tracker.log_stage_failure(err, name, url)
            return StageReport(name=name, ok=False, skipped=True, error=str(err),
                               duration_ms=int((time.monotonic() - started) * 1000))

    # Stages

    def dismiss_overlays(self, session) -> Dict[str, Any]:
        outcomes = self.executor.dismiss_overlays(session, self.config.known_overlays)
        passes = self.executor.dismiss_pass(session, self.matcher)
        swept = self.executor.close_button_sweep(session) if self.config.close_sweep else False
        return {
            "overlays": {k: v for k, v in outcomes.items() if v != "absent"},
            "passes": passes.passes,
            "clicked": [m.raw_text for m in passes.clicked],
            "close_sweep": swept,
        }

    def remove_ads(self, session) -> Dict[str, Any]:
        removed = session.evaluate(REMOVE_SELECTORS, list(self.config.ad_selectors))
        removed = int(removed or 0)
        self.logger.info(f"Removed {removed} ad/widget element(s)")
        return {"removed": removed}

    def lazy_load(self, session) -> Dict[str, Any]:
        """
        Step down the page by half a viewport, pausing so viewport-triggered
        loaders fire, then return to the top.

        The page height is re-read every step since loaders may grow it; the
        step count is capped for infinite-scroll pages.
        """
        cfg = self.config
        eager = int(session.evaluate(EAGER_IMAGES) or 0)
        state = session.scroll_state()
        step = max(1, int(state.get("h", 0) / 2) or 450)
        y = 0
        steps = 0
        while steps < cfg.lazy_max_steps:
            if self.cancel is not None and self.cancel.cancelled:
                break
            y += step
            session.evaluate(SCROLL_TO, y)
            steps += 1
            session.wait(cfg.lazy_pause_ms)
            state = session.scroll_state()
            if y + state.get("h", 0) >= state.get("sh", 0):
                break
        session.evaluate(SCROLL_TO, 0)
        session.wait(cfg.lazy_settle_ms)
        final_height = session.scroll_state().get("sh", 0)
        self.logger.info(f"Lazy-load scroll: {steps} step(s), page height {final_height}px")
        return {"steps": steps, "eager_images": eager, "height": final_height}

    def expand_content(self, session) -> Dict[str, Any]:
        if self.expansion_matcher is None:
            return {"clicked": None}
        result = self.executor.expand_content(session, self.expansion_matcher)
        return {"clicked": result.clicked, "before": result.before, "after": result.after,
                "verified": result.verified}

    def fix_layout(self, session) -> Dict[str, Any]:
        changed = int(session.evaluate(FIX_LAYOUT) or 0)
        self.logger.info(f"Layout fix adjusted {changed} style(s)")
        return {"changed": changed}
