"""
Capture Service

Sequences one job's browser-side work and writes the archive:

  1. raw HTML, serialized and flushed before any DOM mutation
  2. the sanitization pipeline (dismissal, ads, lazy load, expansion, layout)
  3. sanitized HTML (with the navigation guard)
  4. full-page screenshot
  5. network-idle settle, then PDF through the engine chain
  6. metadata document

Each later capture can trigger further layout settling that the next one
benefits from, so the order is fixed. Artifacts already flushed stay on disk
if a later step fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .config import CaptureConfig, Profile
from .errors import CaptureError
from .executor import DismissalExecutor
from .html_cleaner import HTMLCleaner
from .logger import ErrorTracker
from .pdf_generator import PDFGenerator
from .sanitizer import PipelineReport, SanitizationPipeline
from ..utils.file_manager import META, RAW_HTML, SANITIZED_HTML, ArchiveStore, make_archive_id
from ..utils.manifest import ArchiveRecord
from ..utils.polling import CancelToken
from ..utils.validators import normalize_url


PAGE_METRICS = """
() => ({
  title: document.title || '',
  width: Math.max(document.documentElement ? document.documentElement.scrollWidth : 0,
                  document.body ? document.body.scrollWidth : 0),
  height: Math.max(document.documentElement ? document.documentElement.scrollHeight : 0,
                   document.body ? document.body.scrollHeight : 0),
})
"""


@dataclass
class CaptureResult:
    record: ArchiveRecord
    pipeline: PipelineReport


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CaptureService:
    """
    Runs the capture sequence against an already-navigated session.

    Args:
        store: Archive store receiving artifacts
        profile: Configuration for the pipeline and capture options
        tracker: Shared error tracker for stage warnings
        slug_source: ``url`` (default) or ``title`` for the archive slug
        pdf_factory: Builds the PDF engine chain for a session
    """

    def __init__(self,
                 store: ArchiveStore,
                 profile: Optional[Profile] = None,
                 tracker: Optional[ErrorTracker] = None,
                 slug_source: str = "url",
                 pdf_factory: Optional[Callable[..., PDFGenerator]] = None,
                 cancel: Optional[CancelToken] = None):
        self.store = store
        self.profile = profile or Profile()
        self.tracker = tracker or ErrorTracker()
        self.slug_source = slug_source
        self.pdf_factory = pdf_factory or PDFGenerator.for_session
        self.cancel = cancel
        self.logger = logging.getLogger(__name__)

    def build_pipeline(self, profile: Profile) -> SanitizationPipeline:
        executor = DismissalExecutor(profile.executor, cancel=self.cancel)
        return SanitizationPipeline(
            config=profile.sanitizer,
            matcher_config=profile.matcher,
            expansion_config=profile.expansion_matcher(),
            executor=executor,
            tracker=self.tracker,
            cancel=self.cancel,
        )

    def archive_id_for(self, session, url: str) -> str:
        title = None
        if self.slug_source == "title":
            try:
                title = session.evaluate("() => document.title || ''")
            except Exception as e:
                self.logger.debug(f"Title unavailable for slug: {e}")
        return make_archive_id(url, title or None)

    def capture(self, session, url: str, progress: Optional[Callable[[str], None]] = None) -> CaptureResult:
        """
        Capture ``url`` (already loaded in ``session``).

        Raises:
            CaptureError: if an artifact cannot be produced or written
        """
        profile = self.profile.for_url(url)
        capture_cfg: CaptureConfig = profile.capture
        timestamp = utc_timestamp()
        archive_id = self.archive_id_for(session, url)
        paths = self.store.artifact_paths(archive_id)
        self.logger.info(f"Archive ID: {archive_id}")

        def step(name: str):
            if progress:
                progress(name)

        step("raw_html")
        try:
            raw_html = session.content()
            self.store.write_text(archive_id, RAW_HTML, raw_html)
        except Exception as e:
            raise CaptureError(f"Raw HTML capture failed: {e}", stage="raw_html", original=e)

        pipeline_report = self.build_pipeline(profile).run(session, url=url, progress=progress)

        step("html")
        cleaner = HTMLCleaner(inject_nav_guard=capture_cfg.inject_nav_guard)
        try:
            sanitized = cleaner.clean_html(session.content(), url, captured_at=timestamp)
            self.store.write_text(archive_id, SANITIZED_HTML, sanitized)
        except Exception as e:
            raise CaptureError(f"Sanitized HTML capture failed: {e}", stage="html", original=e)

        step("screenshot")
        try:
            session.screenshot(paths["screenshot"], full_page=True)
            self.store.log_written("screenshot", paths["screenshot"])
        except Exception as e:
            raise CaptureError(f"Screenshot failed: {e}", stage="screenshot", original=e)

        step("pdf")
        if not session.wait_for_network_idle(capture_cfg.network_idle_timeout_ms):
            self.logger.debug("Network did not go idle before PDF; continuing")
        session.wait(capture_cfg.pre_pdf_settle_ms)
        engine = self.pdf_factory(session, capture_cfg).generate_pdf(
            sanitized, paths["pdf"], original_url=url, base_url=str(self.store.archive_dir(archive_id)),
        )
        self.store.log_written("PDF", paths["pdf"])

        step("meta")
        try:
            metrics = session.evaluate(PAGE_METRICS) or {}
        except Exception as e:
            self.logger.warning(f"Page metrics unavailable: {e}")
            metrics = {}
        browser_cfg = profile.browser
        viewport = {**browser_cfg.viewport, "deviceScaleFactor": browser_cfg.device_scale_factor}
        user_agent = session.user_agent()
        meta: Dict[str, object] = {
            "url": url,
            "normalized_url": normalize_url(url),
            "timestamp": timestamp,
            "userAgent": user_agent,
            "viewport": viewport,
            "metrics": {
                "title": metrics.get("title", ""),
                "width": int(metrics.get("width") or 0),
                "height": int(metrics.get("height") or 0),
            },
            "archive_id": archive_id,
            "pdf_engine": engine,
            "stages": [
                {"name": s.name, "ok": s.ok, "skipped": s.skipped, "duration_ms": s.duration_ms, "error": s.error}
                for s in pipeline_report.stages
            ],
            "elements": cleaner.compare_snapshots(raw_html, sanitized),
        }
        try:
            self.store.write_json(archive_id, META, meta)
        except OSError as e:
            raise CaptureError(f"Metadata write failed: {e}", stage="meta", original=e)

        record = ArchiveRecord(
            archive_id=archive_id,
            url=url,
            normalized_url=normalize_url(url),
            timestamp=timestamp,
            artifacts=paths,
            title=meta["metrics"]["title"],
            width=meta["metrics"]["width"],
            height=meta["metrics"]["height"],
            user_agent=user_agent,
            viewport=viewport,
            stages_failed=pipeline_report.failed,
            pdf_engine=engine,
        )
        return CaptureResult(record=record, pipeline=pipeline_report)
