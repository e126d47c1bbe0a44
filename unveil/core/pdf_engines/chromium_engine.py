"""
Chromium PDF Engine

Primary renderer: prints the live, sanitized page through the browser
session, with print media emulation, background graphics and fixed page
size.
"""

import logging
import os
from typing import Dict, Optional


class ChromiumEngine:
    name = "chromium"

    def __init__(self, session, page_format: str = "A4", print_background: bool = True,
                 margin: Optional[Dict[str, str]] = None, emulate_print: bool = True):
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.page_format = page_format
        self.print_background = print_background
        self.margin = margin
        self.emulate_print = emulate_print

    def available(self) -> bool:
        return self.session is not None

    def generate(self, html_content: str, output_path: str, base_url: Optional[str] = None, **_options) -> bool:
        """The HTML argument is unused: the live document is printed."""
        try:
            os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
            if self.emulate_print:
                self.session.emulate_media("print")
            try:
                self.session.pdf(output_path, page_format=self.page_format,
                                 print_background=self.print_background, margin=self.margin)
            finally:
                if self.emulate_print:
                    self.session.emulate_media("screen")
            return os.path.exists(output_path) and os.path.getsize(output_path) > 0
        except Exception as e:
            self.logger.error(f"Chromium PDF rendering failed: {e}")
            return False
