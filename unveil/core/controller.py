"""
Unveil Orchestrator: runs one job end to end, or drains the durable queue.

  claim -> open isolated session -> navigate -> capture (pipeline inside)
        -> record history -> complete / fail

Only navigation and capture errors fail a job; stage errors are absorbed by
the pipeline. A watchdog bounds each job's wall-clock time.
"""

from __future__ import annotations

import os
import threading
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, Optional

from .browser import ChromiumLauncher
from .capture import CaptureResult, CaptureService
from .config import Profile, load_profile
from .errors import CaptureError, NavigationError, UnveilError
from .job_queue import Job, JobQueue
from .logger import ErrorTracker
from ..utils.file_manager import ArchiveStore
from ..utils.manifest import Manifest
from ..utils.polling import CancelToken, Deadline
from ..utils.rate_limiter import TokenBucket
from ..utils.validators import validate_url


@dataclass
class RunConfig:
    output_dir: str = "archives"
    db_path: str = "unveil_queue.db"
    job_timeout_secs: float = 300.0  # 0 = no watchdog
    delay_secs: float = 2.0
    headless: bool = True
    profile: Optional[str] = None
    inject_nav_guard: bool = True
    slug_source: str = "url"  # url|title
    error_report: Optional[str] = None


class ArchiveController:
    """
    Owns the archive store, manifest and browser for one worker.

    Args:
        config: Run-level options
        profile: Pre-built profile; loaded from ``config.profile`` when omitted
        session_factory: Context-manager factory yielding a browser session;
            defaults to a Chromium launcher shared across jobs
        queue: Job queue; opened from ``config.db_path`` on first use
    """

    def __init__(self, config: RunConfig, logger: Optional[logging.Logger] = None,
                 profile: Optional[Profile] = None,
                 session_factory: Optional[Callable[[], Any]] = None,
                 queue: Optional[JobQueue] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.profile = profile or load_profile(config.profile)
        self.profile = replace(
            self.profile,
            browser=replace(self.profile.browser, headless=config.headless),
            capture=replace(self.profile.capture, inject_nav_guard=config.inject_nav_guard),
        )
        self.tracker = ErrorTracker(self.logger)
        self.store = ArchiveStore(config.output_dir)
        self.manifest = Manifest(config.output_dir)
        self.rate_limiter = TokenBucket.for_delay(config.delay_secs)
        self._session_factory = session_factory
        self._launcher: Optional[ChromiumLauncher] = None
        self._queue = queue
        self._cancel = CancelToken()

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            self._queue = JobQueue(self.config.db_path)
        return self._queue

    def stop(self):
        """Stop after the current stage; the current job is left to finish or fail."""
        self._cancel.cancel()

    @property
    def stopped(self) -> bool:
        return self._cancel.cancelled

    # Sessions

    @contextmanager
    def _session(self, url: str) -> Iterator[Any]:
        if self._session_factory is not None:
            with self._session_factory() as session:
                yield session
            return
        if self._launcher is None:
            self._launcher = ChromiumLauncher(self.profile.browser).start()
        with self._launcher.session(self.profile.for_url(url).browser) as session:
            yield session

    def close(self):
        if self._launcher is not None:
            self._launcher.stop()
            self._launcher = None
        if self.config.error_report and (self.tracker.errors or self.tracker.warnings):
            self.tracker.save_error_report(self.config.error_report)

    # Single URL

    def _watchdog(self, url: str, job_cancel: CancelToken):
        """Timer that cancels the job's waits when the deadline passes."""
        if not self.config.job_timeout_secs or self.config.job_timeout_secs <= 0:
            return None

        def fire():
            self.logger.error(f"Job watchdog fired after {self.config.job_timeout_secs}s: {url}")
            job_cancel.cancel()

        timer = threading.Timer(self.config.job_timeout_secs, fire)
        timer.daemon = True
        timer.start()
        return timer

    def archive(self, url: str, progress: Optional[Callable[[dict], None]] = None) -> CaptureResult:
        """
        Archive one URL.

        Raises:
            NavigationError: the page could not be loaded
            CaptureError: an artifact could not be produced
        """
        ok, url, err = validate_url(url)
        if not ok:
            raise NavigationError(f"Invalid URL: {err}", stage="validate")

        def emit(stage: str):
            if progress:
                progress({"type": "job", "stage": stage, "url": url})

        deadline = Deadline(self.config.job_timeout_secs)
        job_cancel = CancelToken()
        timer = self._watchdog(url, job_cancel)
        relay = threading.Thread(target=self._relay_stop, args=(job_cancel,), daemon=True)
        relay.start()
        try:
            with self._session(url) as session:
                emit("navigate")
                session.navigate(url, timeout_ms=deadline.bound_ms(self.profile.browser.navigation_timeout_ms))
                service = CaptureService(self.store, self.profile, tracker=self.tracker,
                                         slug_source=self.config.slug_source, cancel=job_cancel)
                result = service.capture(session, url, progress=emit)
        finally:
            if timer is not None:
                timer.cancel()
            job_cancel.cancel()
            relay.join(timeout=1.0)

        self.manifest.append(result.record)
        self.refresh_index()
        emit("completed")
        return result

    def _relay_stop(self, job_cancel: CancelToken):
        """Propagate a controller stop to the running job's cancel token."""
        while not job_cancel.cancelled:
            if self._cancel.wait(0.2):
                job_cancel.cancel()
                return

    def refresh_index(self):
        try:
            self.store.generate_index_file(self.manifest.latest_records())
        except OSError as e:
            self.logger.warning(f"Could not refresh index.html: {e}")

    # Queue

    def run_job(self, job: Job, progress: Optional[Callable[[dict], None]] = None) -> bool:
        """Run a claimed job and write its outcome back to the queue."""
        try:
            result = self.archive(job.url, progress=progress)
        except Exception as e:
            # Navigation and capture errors carry their own stage; anything
            # else escaping a job is recorded as a capture failure.
            err = e if isinstance(e, UnveilError) else CaptureError(f"Unexpected error: {e}", stage="job", original=e)
            self.tracker.log_error(err, context=err.stage, url=job.url)
            self.queue.fail(job.id, str(err))
            if progress:
                progress({"type": "job", "stage": "failed", "url": job.url, "reason": str(err)})
            return False
        self.queue.complete(job.id)
        if result.record.stages_failed:
            self.logger.warning(f"Job {job.id} completed with skipped stages: {result.record.stages_failed}")
        return True

    def run_queue(self, limit: int = 0, progress: Optional[Callable[[dict], None]] = None) -> Dict[str, int]:
        """
        Claim and process jobs until the queue is empty, ``limit`` jobs have
        run (0 = no limit), or ``stop()`` is called.
        """
        stats = {"processed": 0, "completed": 0, "failed": 0, "stages_failed": 0}
        try:
            while not self.stopped:
                if limit and stats["processed"] >= limit:
                    break
                job = self.queue.claim_next()
                if job is None:
                    self.logger.info("Queue empty")
                    break
                if progress:
                    progress({"type": "job", "stage": "claimed", "url": job.url, "id": job.id})
                warnings_before = len(self.tracker.warnings)
                ok = self.run_job(job, progress=progress)
                stats["processed"] += 1
                stats["completed" if ok else "failed"] += 1
                stats["stages_failed"] += len(self.tracker.warnings) - warnings_before
                if progress:
                    progress({"type": "counters", "stats": dict(stats)})
                if not self.stopped and not (limit and stats["processed"] >= limit):
                    self.rate_limiter.acquire(self._cancel)
        finally:
            self.close()
        self.logger.info(f"Run finished: {stats}")
        return stats

    def reclaim_stale(self, minutes: float):
        return self.queue.reclaim_stale(timedelta(minutes=minutes))

    def output_dir(self) -> str:
        return os.path.abspath(self.config.output_dir)
