"""
PDF Generation Module

Tries a chain of engines in order: Chromium printing the live page, then
WeasyPrint rendering the sanitized snapshot, then a text-only ReportLab
document. Only exhaustion of every engine is an error.
"""

import logging
import os
from typing import List, Optional

from .errors import CaptureError
from .pdf_engines.chromium_engine import ChromiumEngine
from .pdf_engines.reportlab_engine import ReportLabEngine
from .pdf_engines.weasyprint_engine import WeasyPrintEngine


class PDFGenerator:
    """Generates the archive PDF through the first engine that succeeds."""

    def __init__(self, engines: Optional[List[object]] = None):
        self.logger = logging.getLogger(__name__)
        self.engines = engines if engines is not None else [WeasyPrintEngine(), ReportLabEngine()]

    @classmethod
    def for_session(cls, session, capture_config) -> "PDFGenerator":
        """Chromium first, then the offline fallbacks."""
        return cls([
            ChromiumEngine(session,
                           page_format=capture_config.pdf_format,
                           print_background=capture_config.print_background,
                           margin=capture_config.pdf_margin,
                           emulate_print=capture_config.emulate_print),
            WeasyPrintEngine(),
            ReportLabEngine(page_format=capture_config.pdf_format),
        ])

    def generate_pdf(self,
                     html_content: str,
                     output_path: str,
                     title: str = None,
                     original_url: str = None,
                     base_url: Optional[str] = None) -> str:
        """
        Render a PDF.

        Args:
            html_content: Sanitized HTML (used by the offline engines)
            output_path: Target PDF path
            title: Fallback title for text-only rendering
            original_url: Source URL printed by text-only rendering
            base_url: Directory for resolving relative resources

        Returns:
            Name of the engine that produced the file.

        Raises:
            CaptureError: if every engine failed
        """
        base_dir = base_url or os.path.dirname(os.path.abspath(output_path))
        tried = []
        for engine in self.engines:
            name = getattr(engine, 'name', type(engine).__name__)
            if not engine.available():
                self.logger.debug(f"PDF engine '{name}' unavailable")
                continue
            tried.append(name)
            if engine.generate(html_content=html_content, output_path=output_path, base_url=base_dir,
                               title=title, original_url=original_url):
                if len(tried) > 1:
                    self.logger.warning(f"PDF rendered by fallback engine '{name}'")
                else:
                    self.logger.info(f"PDF rendered by '{name}': {output_path}")
                return name
            self.logger.warning(f"PDF engine '{name}' failed; trying next")
        raise CaptureError(f"All PDF engines failed ({', '.join(tried) or 'none available'})", stage="pdf")
