"""
Logging and Error Tracking

Centralized logging configuration for the archiver. Handlers are attached to
the top-level ``unveil`` logger, so every module logger obtained with
``logging.getLogger(__name__)`` inside the package propagates to them.

The ErrorTracker keeps a per-run record of stage failures (warnings) and
job-level failures (errors) so that a run can be summarized or written out
as a plain-text report.
"""

import logging
import logging.handlers
import os
import sys
import traceback
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import __version__
from .errors import UnveilError


APP_NAME = "unveil"


class UnveilLogger:
    """
    Owns the handler setup for the ``unveil`` logger hierarchy.

    Three handlers: a rotating debug log, a rotating error-only log, and a
    console stream at the requested level.
    """

    def __init__(self, log_dir: str = "logs", app_name: str = APP_NAME, console: bool = True):
        self.log_dir = Path(log_dir)
        self.app_name = app_name
        self.console = console
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def setup_logger(self, level: int = logging.INFO) -> logging.Logger:
        """
        Attach file and console handlers to the application logger.

        Calling this again replaces the previous handlers rather than
        stacking duplicates.
        """
        logger = logging.getLogger(self.app_name)
        logger.setLevel(logging.DEBUG)
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()

        # Job lines carry the worker thread so interleaved GUI/CLI runs stay readable
        file_format = logging.Formatter(
            '%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        logger.addHandler(self._rotating(f"{self.app_name}.log", 10, 5, logging.DEBUG, file_format))
        logger.addHandler(self._rotating(f"{self.app_name}_errors.log", 5, 3, logging.ERROR, file_format))

        if self.console:
            stream = logging.StreamHandler(sys.stdout)
            stream.setLevel(level)
            stream.setFormatter(logging.Formatter('%(asctime)s | %(levelname)-7s | %(message)s', datefmt='%H:%M:%S'))
            logger.addHandler(stream)

        return logger

    def _rotating(self, filename: str, max_mb: int, backups: int, level: int,
                  formatter: logging.Formatter) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=max_mb * 1024 * 1024,
            backupCount=backups,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(formatter)
        return handler

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        if not name:
            return logging.getLogger(self.app_name)
        if name.startswith(self.app_name + ".") or name == self.app_name:
            return logging.getLogger(name)
        return logging.getLogger(f"{self.app_name}.{name}")

    def log_system_info(self):
        logger = self.get_logger('system')
        logger.info(f"=== Unveil {__version__} started (Python {sys.version.split()[0]}, {sys.platform}) ===")
        logger.debug(f"cwd={os.getcwd()} logs={self.log_dir.absolute()}")


class ErrorTracker:
    """
    Records stage failures and job failures for one run.

    Stage failures are downgraded to warnings; job failures are errors.
    Each entry gets an id (``WARN_...`` / ``ERR_...``) that is also written
    to the log line, so a report entry can be found in the log file.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(APP_NAME)
        self.errors: List[Dict[str, Any]] = []
        self.warnings: List[Dict[str, Any]] = []

    @staticmethod
    def _next_id(prefix: str, count: int) -> str:
        return f"{prefix}_{datetime.now():%Y%m%d_%H%M%S}_{count:03d}"

    @staticmethod
    def _line(entry_id: str, message: str, context: Optional[str], url: Optional[str]) -> str:
        suffix = "".join(f" ({label}: {value})" for label, value in (("stage", context), ("url", url)) if value)
        return f"[{entry_id}] {message}{suffix}"

    def log_error(self,
                  error: Exception,
                  context: str = None,
                  url: str = None,
                  additional_info: Dict[str, Any] = None) -> str:
        """
        Record a job-level error.

        Returns:
            Error ID for tracking
        """
        error_id = self._next_id("ERR", len(self.errors))
        code = error.code if isinstance(error, UnveilError) else type(error).__name__
        tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        self.errors.append({
            'id': error_id,
            'timestamp': datetime.now(),
            'type': type(error).__name__,
            'code': code,
            'message': str(error),
            'context': context,
            'url': url,
            'traceback': tb,
            'additional_info': additional_info or {},
        })
        self.logger.error(self._line(error_id, f"{code}: {error}", context, url))
        self.logger.debug(f"[{error_id}] Full traceback:\n{tb}")
        return error_id

    def log_warning(self, message: str, context: str = None, url: str = None) -> str:
        """Record a recoverable problem; returns the warning ID."""
        warning_id = self._next_id("WARN", len(self.warnings))
        self.warnings.append({
            'id': warning_id,
            'timestamp': datetime.now(),
            'message': message,
            'context': context,
            'url': url,
        })
        self.logger.warning(self._line(warning_id, message, context, url))
        return warning_id

    def log_stage_failure(self, error: Exception, stage: str, url: str = None) -> str:
        """A stage that raised is logged and skipped, never fatal."""
        return self.log_warning(f"Stage '{stage}' skipped: {error}", context=stage, url=url)

    def get_error_summary(self) -> Dict[str, Any]:
        codes = Counter(e['code'] for e in self.errors)
        return {
            'total_errors': len(self.errors),
            'total_warnings': len(self.warnings),
            'error_types': dict(codes),
            'recent_errors': self.errors[-5:],
            'recent_warnings': self.warnings[-5:],
        }

    def by_url(self) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        """Errors and warnings grouped per job URL (``-`` when unknown)."""
        grouped: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for kind, entries in (('errors', self.errors), ('warnings', self.warnings)):
            for entry in entries:
                slot = grouped.setdefault(entry['url'] or '-', {'errors': [], 'warnings': []})
                slot[kind].append(entry)
        return grouped

    def save_error_report(self, output_path: str):
        """Write a plain-text report of every job that failed or skipped a stage."""
        lines = [
            "UNVEIL RUN REPORT",
            f"Generated: {datetime.now():%Y-%m-%d %H:%M:%S}",
            f"Total Errors: {len(self.errors)}",
            f"Total Warnings: {len(self.warnings)}",
            "",
        ]
        for url, entries in self.by_url().items():
            lines.append(f"== {url}")
            for error in entries['errors']:
                lines.append(f"  FAILED [{error['id']}] {error['code']} at {error['context'] or '?'}: {error['message']}")
                lines.extend("    " + tb_line for tb_line in error['traceback'].rstrip().splitlines())
            for warning in entries['warnings']:
                lines.append(f"  skipped [{warning['id']}] {warning['context'] or '?'}: {warning['message']}")
            lines.append("")
        try:
            Path(output_path).write_text("\n".join(lines), encoding='utf-8')
            self.logger.info(f"Run report written: {output_path}")
        except OSError as e:
            self.logger.error(f"Could not write run report {output_path}: {e}")


_logger_instance: Optional[UnveilLogger] = None


def get_logger(name: str = None) -> logging.Logger:
    """Logger under the ``unveil`` hierarchy; works before initialization too."""
    if _logger_instance is not None:
        return _logger_instance.get_logger(name)
    if not name:
        return logging.getLogger(APP_NAME)
    if name == APP_NAME or name.startswith(APP_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_NAME}.{name}")


def initialize_logging(log_dir: str = "logs", level: int = logging.INFO, console: bool = True) -> logging.Logger:
    """
    Initialize the global logging system.

    Args:
        log_dir: Directory for log files
        level: Console logging level (files always receive DEBUG)
        console: Attach a stdout handler
    """
    global _logger_instance
    _logger_instance = UnveilLogger(log_dir, console=console)
    logger = _logger_instance.setup_logger(level)
    _logger_instance.log_system_info()
    return logger


def create_error_tracker(logger_name: str = None) -> ErrorTracker:
    return ErrorTracker(get_logger(logger_name))
