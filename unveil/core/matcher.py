"""
Element Matching Module

Finds interactive elements whose visible text matches a configured set of
dismissal terms ("close", "no thanks", "ok", ...) across a page and its
accessible frames.

The browser side only collects lightweight element descriptors; every
decision (clickability, visibility, term matching, blacklist, anchor length,
de-duplication) is made here in plain Python so it can be tested without a
live browser.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple

from .config import MatcherConfig


# Collected per frame. The pre-filter mirrors is_clickable() so that only
# candidate elements are serialized back to Python.
COLLECT_SCRIPT = """
(opts) => {
  const tags = new Set(opts.tags);
  const out = [];
  const all = document.querySelectorAll('*');
  const sx = window.scrollX || window.pageXOffset || 0;
  const sy = window.scrollY || window.pageYOffset || 0;
  for (let i = 0; i < all.length; i++) {
    const el = all[i];
    const tag = (el.tagName || '').toLowerCase();
    const role = (el.getAttribute('role') || '').toLowerCase();
    const onclick = el.hasAttribute('onclick');
    const tabIndex = typeof el.tabIndex === 'number' ? el.tabIndex : -1;
    if (!(tags.has(tag) || onclick || role === 'button' || tabIndex >= 0)) continue;
    const raw = (el.textContent || el.value || '').trim();
    if (!raw) continue;
    const st = window.getComputedStyle(el);
    const r = el.getBoundingClientRect();
    out.push({
      tag: tag,
      text: raw.slice(0, opts.maxText),
      textLength: raw.length,
      onclick: onclick,
      role: role,
      tabIndex: tabIndex,
      display: st.display,
      visibility: st.visibility,
      opacity: parseFloat(st.opacity || '1'),
      left: r.left, top: r.top, width: r.width, height: r.height,
      scrollX: sx, scrollY: sy,
    });
  }
  return out;
}
"""

_QUOTES = str.maketrans({
    "‘": "'", "’": "'", "‚": "'", "‛": "'", "′": "'", "`": "'",
    "“": '"', "”": '"', "„": '"', "‟": '"', "″": '"',
})
_PUNCT = re.compile(r"[^\w\s']", re.UNICODE)
_SPACE = re.compile(r"\s+")


@dataclass
class ElementDescriptor:
    """Snapshot of one candidate element as reported by the page."""

    tag: str
    text: str
    text_length: int = 0
    onclick: bool = False
    role: str = ""
    tab_index: int = -1
    display: str = "inline"
    visibility: str = "visible"
    opacity: float = 1.0
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0
    scroll_x: float = 0.0
    scroll_y: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ElementDescriptor":
        text = str(data.get("text") or "")
        tab_index = data.get("tabIndex")
        opacity = data.get("opacity")
        return cls(
            tag=str(data.get("tag") or "").lower(),
            text=text,
            text_length=int(data.get("textLength") or len(text)),
            onclick=bool(data.get("onclick")),
            role=str(data.get("role") or "").lower(),
            tab_index=int(tab_index) if tab_index is not None else -1,
            display=str(data.get("display") or "inline"),
            visibility=str(data.get("visibility") or "visible"),
            opacity=float(opacity) if opacity is not None else 1.0,
            left=float(data.get("left") or 0.0),
            top=float(data.get("top") or 0.0),
            width=float(data.get("width") or 0.0),
            height=float(data.get("height") or 0.0),
            scroll_x=float(data.get("scrollX") or 0.0),
            scroll_y=float(data.get("scrollY") or 0.0),
        )


@dataclass
class MatchedElement:
    """
    A dismissible element found during one scan.

    ``x``/``y`` are the center in page coordinates of the element's frame
    (scroll offset included) at scan time. They are a snapshot: re-scan
    after anything that may have reflowed the page.
    """

    tag: str
    text: str
    x: float
    y: float
    matched_terms: List[str] = field(default_factory=list)
    raw_text: str = ""
    scroll_x: float = 0.0
    scroll_y: float = 0.0
    frame_index: int = 0
    frame_url: str = ""
    frame_offset: Tuple[float, float] = (0.0, 0.0)

    def viewport_point(self) -> Tuple[float, float]:
        """Center translated to main-viewport coordinates for pointer input."""
        ox, oy = self.frame_offset
        return (ox + self.x - self.scroll_x, oy + self.y - self.scroll_y)


def normalize_text(text: str) -> str:
    """
    Normalize element text for matching.

    Lowercases, unifies curly/straight quotes, strips punctuation other than
    apostrophes and collapses whitespace.
    """
    if not text:
        return ""
    text = text.translate(_QUOTES).lower()
    text = _PUNCT.sub(" ", text)
    return _SPACE.sub(" ", text).strip()


def compile_term(term: str, short_max: int = 3) -> Tuple[str, Optional[Pattern]]:
    """Return (normalized_term, pattern); pattern is None for short whole-word terms."""
    norm = normalize_text(term)
    if len(norm) <= short_max:
        return norm, None
    words = [re.escape(w) for w in norm.split()]
    return norm, re.compile(r"\b" + r"\s+".join(words) + r"\b")


def term_matches(normalized_text: str, term: str, short_max: int = 3) -> bool:
    """
    Whether a single term fires on already-normalized text.

    Short terms (<= ``short_max`` characters) must equal one whitespace-split
    token; longer terms match as a word-bounded phrase.
    """
    norm, pattern = compile_term(term, short_max)
    if not norm:
        return False
    if pattern is None:
        return norm in normalized_text.split()
    return pattern.search(normalized_text) is not None


def is_blacklisted(raw_text: str, blacklist: Iterable[str]) -> bool:
    """Case-insensitive substring test against the unnormalized text."""
    lowered = (raw_text or "").lower()
    return any(phrase and phrase.lower() in lowered for phrase in blacklist)


def is_clickable(desc: ElementDescriptor, interactive_tags: Iterable[str] = ("button", "a", "input")) -> bool:
    """
    Interactive tag, click handler attribute, role=button, or a
    non-negative tab index.
    """
    if desc.tag in interactive_tags:
        return True
    if desc.onclick:
        return True
    if desc.role == "button":
        return True
    return desc.tab_index >= 0


def is_visible(desc: ElementDescriptor) -> bool:
    if desc.display == "none":
        return False
    if desc.visibility in ("hidden", "collapse"):
        return False
    if desc.opacity <= 0:
        return False
    return desc.width > 0 and desc.height > 0


def passes_anchor_guard(desc: ElementDescriptor, max_length: int) -> bool:
    """Anchors with long text are headlines/navigation, never close controls."""
    if desc.tag != "a":
        return True
    length = len(desc.text.strip())
    if desc.text_length and desc.text_length > length:
        length = desc.text_length
    return length <= max_length


def dedupe_by_text(elements: Iterable[MatchedElement]) -> List[MatchedElement]:
    """Keep the first element for each normalized text, in discovery order."""
    seen = set()
    unique: List[MatchedElement] = []
    for el in elements:
        key = el.text.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(el)
    return unique


class ElementMatcher:
    """
    Term-based discovery of clickable, dismissible elements.

    The matcher runs independently per frame; frames that refuse access
    (cross-origin isolation, detached while scanning) are skipped.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        self.logger = logging.getLogger(__name__)
        self._terms = [
            (term, compile_term(term, self.config.short_term_max_length))
            for term in self.config.search_terms
        ]

    def matched_terms(self, normalized_text: str) -> List[str]:
        """Return the configured terms that fire on normalized text."""
        hits = []
        tokens = None
        for term, (norm, pattern) in self._terms:
            if not norm:
                continue
            if pattern is None:
                if tokens is None:
                    tokens = normalized_text.split()
                if norm in tokens:
                    hits.append(term)
            elif pattern.search(normalized_text):
                hits.append(term)
        return hits

    def match_descriptor(self, desc: ElementDescriptor) -> Optional[MatchedElement]:
        cfg = self.config
        if not is_clickable(desc, cfg.interactive_tags):
            return None
        if not desc.text.strip():
            return None
        if cfg.require_visible and not is_visible(desc):
            return None
        if not passes_anchor_guard(desc, cfg.anchor_max_length):
            return None

        normalized = normalize_text(desc.text)
        terms = self.matched_terms(normalized)
        if not terms:
            return None
        # Blacklist wins over a term match
        if is_blacklisted(desc.text, cfg.blacklist):
            return None

        return MatchedElement(
            tag=desc.tag,
            text=normalized,
            x=desc.left + desc.width / 2 + desc.scroll_x,
            y=desc.top + desc.height / 2 + desc.scroll_y,
            matched_terms=terms,
            raw_text=desc.text.strip(),
            scroll_x=desc.scroll_x,
            scroll_y=desc.scroll_y,
        )

    def match_descriptors(self, descriptors: Iterable[Any], frame_index: int = 0, frame_url: str = "",
                          frame_offset: Tuple[float, float] = (0.0, 0.0)) -> List[MatchedElement]:
        """Filter raw descriptors (dicts or ElementDescriptor) in document order."""
        matches: List[MatchedElement] = []
        for item in descriptors:
            desc = item if isinstance(item, ElementDescriptor) else ElementDescriptor.from_dict(item)
            match = self.match_descriptor(desc)
            if match is None:
                continue
            match.frame_index = frame_index
            match.frame_url = frame_url
            match.frame_offset = frame_offset
            matches.append(match)
        return matches

    def scan_frame(self, session, frame, index: int = 0) -> List[MatchedElement]:
        raw = session.evaluate(
            COLLECT_SCRIPT,
            {"tags": list(self.config.interactive_tags), "maxText": int(self.config.max_text_length)},
            frame=frame,
        )
        offset = session.frame_offset(frame)
        url = getattr(frame, "url", "") or ""
        return self.match_descriptors(raw or [], frame_index=index, frame_url=url, frame_offset=offset)

    def scan(self, session) -> List[MatchedElement]:
        """
        Scan every frame of the session's page, outer to inner.

        Returns:
            Matches de-duplicated by normalized text, in discovery order.
        """
        found: List[MatchedElement] = []
        for index, frame in enumerate(session.frames()):
            try:
                found.extend(self.scan_frame(session, frame, index))
            except Exception as e:
                self.logger.debug(f"Skipping frame {index} ({getattr(frame, 'url', '')}): {e}")
        unique = dedupe_by_text(found)
        self.log_matches(unique)
        return unique

    def log_matches(self, elements: List[MatchedElement]) -> None:
        if not elements:
            self.logger.debug("No matching clickable elements found")
            return
        self.logger.info(f"Found {len(elements)} clickable element(s) matching dismissal terms")
        for i, el in enumerate(elements, 1):
            self.logger.info(f"  {i}. <{el.tag}> \"{el.raw_text[:60]}\" terms={el.matched_terms}")
