"""
WeasyPrint PDF Engine

Fallback renderer for the sanitized HTML snapshot when Chromium's own print
path fails. Resources are constrained to the archive directory by default
via a custom url_fetcher; remote fetches are only allowed when requested.
"""

import logging
import os
from typing import Optional

try:
    from weasyprint import HTML, default_url_fetcher
except (ImportError, OSError):
    HTML = None
    default_url_fetcher = None


class WeasyPrintEngine:
    name = "weasyprint"

    def __init__(self, allow_remote: bool = False):
        self.logger = logging.getLogger(__name__)
        self.allow_remote = allow_remote

    def _fetcher(self, allowed_base: Optional[str] = None):
        """
        Return a url_fetcher that serves files under ``allowed_base`` and,
        if enabled, delegates http(s) URLs to WeasyPrint's default fetcher.
        """

        def fetch(url):
            if url.startswith(('http://', 'https://')):
                if self.allow_remote:
                    return default_url_fetcher(url)
                raise ValueError(f"Remote fetch blocked: {url}")
            path = url[7:] if url.startswith('file://') else url
            abs_path = os.path.abspath(path)
            if allowed_base:
                base = os.path.abspath(allowed_base)
                if os.path.commonpath([abs_path, base]) != base:
                    raise ValueError(f"Access outside archive directory blocked: {url}")
            with open(abs_path, 'rb') as f:
                data = f.read()
            return {'string': data, 'mime_type': None}

        return fetch

    def available(self) -> bool:
        return HTML is not None

    def generate(self, html_content: str, output_path: str, base_url: Optional[str] = None, **_options) -> bool:
        """
        Render ``html_content`` to ``output_path``.

        Args:
            html_content: Sanitized HTML string
            output_path: Target PDF path
            base_url: Directory for resolving relative resources
        """
        if HTML is None:
            self.logger.warning("WeasyPrint is not available (package or native libraries missing)")
            return False
        try:
            os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
            html = HTML(string=html_content, base_url=base_url, url_fetcher=self._fetcher(allowed_base=base_url))
            html.write_pdf(output_path)
            return os.path.exists(output_path) and os.path.getsize(output_path) > 0
        except Exception as e:
            self.logger.error(f"WeasyPrint generation failed: {e}")
            return False
