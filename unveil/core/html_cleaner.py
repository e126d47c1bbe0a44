"""
HTML Snapshot Cleaning Module

Post-processes the serialized DOM captured after sanitization so that the
saved ``page.html`` is an inert, self-contained copy:

  - a navigation guard (Content-Security-Policy meta) is injected as the
    first element of <head>, so scripts and inline handlers in the saved
    copy never run when it is reopened
  - meta refresh redirects are removed
  - bookkeeping attributes left by the dismissal executor are stripped
  - a <base> element points relative URLs back at the live site
"""

from bs4 import BeautifulSoup, Comment
import re
import logging
from typing import Dict, Optional


NAV_GUARD_POLICY = "script-src 'none'; object-src 'none'; frame-src 'none'; form-action 'none'"
ARCHIVE_MARKER = "unveil-archive"

_MARKER_ATTRS = re.compile(r'^data-unveil-', re.I)


class HTMLCleaner:
    """
    Produces the saved copy of a sanitized page.

    The live page was already mutated by the pipeline; this class only
    touches the serialized string.
    """

    def __init__(self, inject_nav_guard: bool = True):
        self.logger = logging.getLogger(__name__)
        self.inject_nav_guard = inject_nav_guard

    def clean_html(self, html_content: str, original_url: str, captured_at: Optional[str] = None) -> str:
        """
        Clean a serialized DOM for archival.

        Args:
            html_content: ``page.content()`` after sanitization
            original_url: Source URL (used for <base> and the archive marker)
            captured_at: ISO timestamp recorded in the archive marker

        Returns:
            Cleaned HTML string
        """
        soup = BeautifulSoup(html_content, 'lxml')
        head = self._ensure_head(soup)

        refreshes = self._remove_meta_refresh(soup)
        markers = self._strip_marker_attributes(soup)
        self._ensure_base(soup, head, original_url)
        if self.inject_nav_guard:
            self._inject_nav_guard(soup, head)
        self._add_archive_marker(soup, head, original_url, captured_at)

        cleaned_html = str(soup)
        self.logger.debug(
            f"Cleaned snapshot for {original_url}: removed {refreshes} refresh tag(s), "
            f"{markers} marker attribute(s); {len(html_content)} -> {len(cleaned_html)} chars"
        )
        return cleaned_html

    def _ensure_head(self, soup: BeautifulSoup):
        head = soup.find('head')
        if head is None:
            head = soup.new_tag('head')
            html = soup.find('html')
            if html is None:
                html = soup.new_tag('html')
                for child in list(soup.contents):
                    html.append(child.extract())
                soup.append(html)
            html.insert(0, head)
        return head

    def _remove_meta_refresh(self, soup: BeautifulSoup) -> int:
        removed = 0
        for meta in soup.find_all('meta', attrs={'http-equiv': re.compile(r'^refresh$', re.I)}):
            meta.decompose()
            removed += 1
        return removed

    def _strip_marker_attributes(self, soup: BeautifulSoup) -> int:
        stripped = 0
        for element in soup.find_all(True):
            for attr in [a for a in element.attrs if _MARKER_ATTRS.match(a)]:
                del element.attrs[attr]
                stripped += 1
        return stripped

    def _ensure_base(self, soup: BeautifulSoup, head, original_url: str) -> None:
        if soup.find('base') is not None or not original_url.startswith(('http://', 'https://')):
            return
        base = soup.new_tag('base', href=original_url)
        head.insert(0, base)

    def _inject_nav_guard(self, soup: BeautifulSoup, head) -> None:
        """The CSP meta must precede every script to take effect."""
        for existing in head.find_all('meta', attrs={'http-equiv': re.compile(r'^content-security-policy$', re.I)}):
            if existing.get('content') == NAV_GUARD_POLICY:
                return
        guard = soup.new_tag('meta')
        guard['http-equiv'] = 'Content-Security-Policy'
        guard['content'] = NAV_GUARD_POLICY
        head.insert(0, guard)

    def _add_archive_marker(self, soup: BeautifulSoup, head, original_url: str, captured_at: Optional[str]) -> None:
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            if ARCHIVE_MARKER in comment:
                comment.extract()
        note = f" {ARCHIVE_MARKER}: source={original_url}"
        if captured_at:
            note += f" captured={captured_at}"
        head.insert(0, Comment(note + " "))

    def count_elements(self, html_content: str) -> Dict[str, int]:
        """Count content-bearing elements in a snapshot."""
        soup = BeautifulSoup(html_content, 'lxml')
        return {
            'paragraphs': len(soup.find_all('p')),
            'headings': len(soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6'])),
            'images': len(soup.find_all('img')),
            'links': len(soup.find_all('a')),
            'iframes': len(soup.find_all('iframe')),
            'scripts': len(soup.find_all('script')),
        }

    def compare_snapshots(self, raw_html: str, sanitized_html: str) -> Dict[str, Dict[str, int]]:
        """Element counts before and after sanitization, for the metadata document."""
        return {
            'raw': self.count_elements(raw_html),
            'sanitized': self.count_elements(sanitized_html),
        }

    def extract_title(self, html_content: str) -> str:
        soup = BeautifulSoup(html_content, 'lxml')
        title = soup.find('title')
        return title.get_text().strip() if title else ""
