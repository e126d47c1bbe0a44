"""
unveil.cli

Command-line entry point.

  unveil archive https://example.com/news/story      # one URL, no queue
  unveil submit URL [URL ...]                         # add to the durable queue
  unveil work --limit 10                              # drain the queue
  unveil stats
  unveil list --status failed
  unveil requeue 42
  unveil reclaim --older-than 30                      # minutes in processing
  unveil gui

Exit status: 0 on success, 1 when a job or submission fails, 2 for a
bad argument, unknown job or invalid profile.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import timedelta
from typing import List, Optional

from .core.config import load_profile
from .core.controller import ArchiveController, RunConfig
from .core.errors import CaptureError, NavigationError, UnveilError
from .core.job_queue import STATUSES, JobQueue
from .core.logger import get_logger, initialize_logging


def _add_run_options(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--output-dir", default="archives", help="Archive root directory (default: archives)")
    ap.add_argument("--profile", default=None, help="JSON profile overriding terms, selectors and timings")
    ap.add_argument("--job-timeout", type=float, default=300.0,
                    help="Per-job watchdog in seconds; 0 disables it (default: 300)")
    ap.add_argument("--headful", action="store_true", help="Show the browser window")
    ap.add_argument("--no-nav-guard", action="store_true",
                    help="Do not inject the navigation guard into the saved page.html")
    ap.add_argument("--slug-source", choices=("url", "title"), default="url",
                    help="Derive the archive slug from the URL path or the page title")
    ap.add_argument("--error-report", default=None, help="Write an error report here at the end of the run")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="unveil",
        description="Archive web pages (HTML, screenshot, PDF, metadata) with obstructions removed.",
    )
    ap.add_argument("--db", default="unveil_queue.db", help="Queue database path (default: unveil_queue.db)")
    ap.add_argument("--log-dir", default="logs", help="Log directory (default: logs)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("archive", help="Archive one URL immediately")
    p.add_argument("url")
    _add_run_options(p)

    p = sub.add_parser("submit", help="Queue one or more URLs")
    p.add_argument("urls", nargs="+")

    p = sub.add_parser("work", help="Process queued jobs")
    p.add_argument("--limit", type=int, default=0, help="Stop after N jobs (default: until empty)")
    p.add_argument("--delay", type=float, default=2.0, help="Seconds between jobs (default: 2)")
    _add_run_options(p)

    sub.add_parser("stats", help="Show job counts per status")

    p = sub.add_parser("list", help="List jobs")
    p.add_argument("--status", choices=STATUSES, default=None)
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("requeue", help="Return a job to pending")
    p.add_argument("job_id", type=int)

    p = sub.add_parser("reclaim", help="Return stale processing jobs to pending")
    p.add_argument("--older-than", type=float, default=30.0, help="Minutes in processing (default: 30)")

    sub.add_parser("gui", help="Open the desktop queue window")

    p = sub.add_parser("check-profile", help="Validate a JSON profile")
    p.add_argument("path")

    return ap.parse_args(argv)


def _run_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        output_dir=args.output_dir,
        db_path=args.db,
        job_timeout_secs=args.job_timeout,
        delay_secs=getattr(args, "delay", 2.0),
        headless=not args.headful,
        profile=args.profile,
        inject_nav_guard=not args.no_nav_guard,
        slug_source=args.slug_source,
        error_report=args.error_report,
    )


def _print_progress(event: dict) -> None:
    if event.get("type") == "job" and event.get("stage") in ("claimed", "completed", "failed"):
        reason = f" ({event['reason']})" if event.get("reason") else ""
        print(f"[{event['stage']}] {event.get('url', '')}{reason}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    initialize_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO)
    logger = get_logger("cli")

    try:
        if args.command == "archive":
            controller = ArchiveController(_run_config(args))
            try:
                result = controller.archive(args.url, progress=_print_progress)
            except (NavigationError, CaptureError) as e:
                logger.error(str(e))
                print(f"Archive failed: {e}")
                return 1
            finally:
                controller.close()
            print(json.dumps(result.record.artifacts, indent=2))
            return 0

        if args.command == "work":
            controller = ArchiveController(_run_config(args))
            stats = controller.run_queue(limit=args.limit, progress=_print_progress)
            print(json.dumps(stats, indent=2))
            return 0 if stats["failed"] == 0 else 1

        if args.command == "gui":
            from .gui.app import main as gui_main

            gui_main(db_path=args.db)
            return 0

        if args.command == "check-profile":
            profile = load_profile(args.path)
            print(f"Profile OK: {len(profile.matcher.search_terms)} terms, "
                  f"stages={profile.sanitizer.stages}")
            return 0

        with JobQueue(args.db) as queue:
            if args.command == "submit":
                accepted = sum(1 for url in args.urls if queue.submit(url))
                print(f"Queued {accepted} of {len(args.urls)} URL(s)")
                return 0 if accepted == len(args.urls) else 1
            if args.command == "stats":
                print(json.dumps(queue.stats(), indent=2))
                return 0
            if args.command == "list":
                for job in queue.list_jobs(args.status, args.limit):
                    err = f"  {job.error_message}" if job.error_message else ""
                    print(f"{job.id:>5}  {job.status:<10}  {job.url}{err}")
                return 0
            if args.command == "requeue":
                changed = queue.requeue(args.job_id)
                print(f"Job {args.job_id} {'requeued' if changed else 'already pending'}")
                return 0
            if args.command == "reclaim":
                ids = queue.reclaim_stale(timedelta(minutes=args.older_than))
                print(f"Reclaimed {len(ids)} job(s): {ids}")
                return 0
    except UnveilError as e:
        logger.error(str(e))
        print(f"Error: {e}")
        return 2
    except (OSError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}")
        return 2

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
