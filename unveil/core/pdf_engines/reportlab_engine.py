"""
ReportLab PDF Engine

Last-resort renderer: a text-only document built from the snapshot's title,
headings and paragraphs.
"""

import logging
import os
from typing import Optional
from xml.sax.saxutils import escape

from bs4 import BeautifulSoup
from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer


PAGE_SIZES = {"A4": A4, "LETTER": LETTER}


class ReportLabEngine:
    name = "reportlab"

    def __init__(self, page_format: str = "A4"):
        self.logger = logging.getLogger(__name__)
        self.pagesize = PAGE_SIZES.get(page_format.upper(), A4)

    def available(self) -> bool:
        return True

    def generate(self, html_content: str, output_path: str, base_url: Optional[str] = None,
                 title: Optional[str] = None, original_url: Optional[str] = None, **_options) -> bool:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
            styles = getSampleStyleSheet()
            soup = BeautifulSoup(html_content, 'lxml')
            t = soup.find('title')
            text_title = t.get_text().strip() if t else (title or "Archived Page")

            story = [Paragraph(escape(text_title), styles['Title'])]
            if original_url:
                story.append(Paragraph(escape(original_url), styles['Italic']))
            story.append(Spacer(1, 12))
            for el in soup.find_all(['h1', 'h2', 'h3', 'p', 'li']):
                txt = el.get_text(" ", strip=True)
                if not txt:
                    continue
                style = styles['Heading2'] if el.name in ('h1', 'h2', 'h3') else styles['Normal']
                story.append(Paragraph(escape(txt), style))
                story.append(Spacer(1, 6))

            SimpleDocTemplate(output_path, pagesize=self.pagesize).build(story)
            return os.path.exists(output_path) and os.path.getsize(output_path) > 0
        except Exception as e:
            self.logger.error(f"ReportLab generation failed: {e}")
            return False
