"""
Archive Store

Archive identity derivation and the on-disk layout of one capture:

    <output_dir>/<archive_id>/page_raw.html
                              page.html
                              screenshot.png
                              page.pdf
                              meta.json

``archive_id`` is a human-readable slug plus the first eight hex characters
of the MD5 of the normalized URL, so re-archiving the same canonical page
overwrites the same directory.
"""

import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import logging
from datetime import datetime

from .validators import normalize_url


GENERIC_SEGMENTS = frozenset({"news", "article", "post", "view", "en"})
MAX_SLUG_LENGTH = 80

RAW_HTML = "page_raw.html"
SANITIZED_HTML = "page.html"
SCREENSHOT = "screenshot.png"
PDF = "page.pdf"
META = "meta.json"


def human_size(num_bytes: int) -> str:
    """Format a byte count as ``512 B``, ``12.3 KB``, ``4.0 MB``."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} B" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def slug_from_url(url: str) -> str:
    """
    Human-readable slug from a URL path.

    Generic segments (``news``, ``article``, ``post``, ``view``, ``en``) are
    dropped and the rest joined with dashes; the host is used when nothing
    remains.
    """
    parsed = urlparse(url or "")
    parts = [p for p in parsed.path.split("/") if p]
    host = parsed.hostname or ""
    if not parts:
        return host or "untitled"
    kept = [p for p in parts if p.lower() not in GENERIC_SEGMENTS]
    joined = re.sub(r"[^\w\s-]", "", "-".join(kept))
    joined = re.sub(r"-+", "-", joined).strip("-")
    return joined or host or "untitled"


def slugify_title(title: Optional[str]) -> str:
    """Lowercase, filesystem-safe slug; ``untitled`` for empty input."""
    if not title:
        return "untitled"
    slug = re.sub(r"[^a-z0-9\-]+", "-", title.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].strip("-")
    return slug or "untitled"


def url_hash(url: str, length: int = 8) -> str:
    """Short MD5 hex digest of the normalized URL."""
    return hashlib.md5(normalize_url(url).encode("utf-8")).hexdigest()[:length]


def make_archive_id(url: str, title: Optional[str] = None) -> str:
    """
    ``slug + "_" + md5(normalized_url)[:8]``.

    The slug comes from ``title`` when given, otherwise from the URL path.
    Query string and fragment never affect the result.
    """
    source = title if title else slug_from_url(normalize_url(url))
    return f"{slugify_title(source)}_{url_hash(url)}"


class ArchiveStore:
    """
    Owns the archive root directory and writes artifacts into per-archive
    directories.
    """

    def __init__(self, base_output_dir: str = "archives"):
        self.base_output_dir = Path(base_output_dir)
        self.logger = logging.getLogger(__name__)
        self.base_output_dir.mkdir(parents=True, exist_ok=True)

    def archive_dir(self, archive_id: str) -> Path:
        path = self.base_output_dir / archive_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def artifact_paths(self, archive_id: str) -> Dict[str, str]:
        base = self.base_output_dir / archive_id
        return {
            "raw_html": str(base / RAW_HTML),
            "html": str(base / SANITIZED_HTML),
            "screenshot": str(base / SCREENSHOT),
            "pdf": str(base / PDF),
            "meta": str(base / META),
        }

    def log_written(self, label: str, path: str) -> None:
        size = os.path.getsize(path) if os.path.exists(path) else 0
        self.logger.info(f"Saved {label} ({human_size(size)}): {path}")

    def write_text(self, archive_id: str, name: str, content: str) -> str:
        """Write a text artifact; overwrites any previous capture."""
        path = self.archive_dir(archive_id) / name
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        self.log_written(name, str(path))
        return str(path)

    def write_json(self, archive_id: str, name: str, data: Dict[str, Any]) -> str:
        path = self.archive_dir(archive_id) / name
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        self.log_written(name, str(path))
        return str(path)

    def get_output_stats(self) -> Dict[str, Any]:
        stats = {"archives": 0, "total_size": 0, "root": str(self.base_output_dir)}
        for entry in self.base_output_dir.iterdir():
            if entry.is_dir() and (entry / META).exists():
                stats["archives"] += 1
                stats["total_size"] += sum(f.stat().st_size for f in entry.iterdir() if f.is_file())
        return stats

    def generate_index_file(self, records: List[Dict[str, Any]], output_path: str = None) -> str:
        """
        Write ``index.html`` listing every capture with links to its artifacts.

        Args:
            records: Latest archive records (dicts with url, archive_id,
                timestamp, title and artifact paths)
            output_path: Path for the index file (optional)
        """
        if output_path is None:
            output_path = str(self.base_output_dir / "index.html")
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self._build_index_html(records))
        self.logger.info(f"Generated index file: {output_path}")
        return output_path

    def _build_index_html(self, records: List[Dict[str, Any]]) -> str:
        entries = []
        for i, rec in enumerate(records, 1):
            links = []
            for key, label in (("html", "HTML"), ("raw_html", "Raw HTML"), ("pdf", "PDF"),
                               ("screenshot", "Screenshot"), ("meta", "Metadata")):
                path = (rec.get("artifacts") or {}).get(key)
                if path and os.path.exists(path):
                    rel = os.path.relpath(path, self.base_output_dir)
                    links.append(f'<a href="{self._escape_html(rel)}">{label}</a>')
            title = rec.get("title") or rec.get("archive_id", "")
            entries.append(
                '    <div class="entry">\n'
                f'      <div class="title">{i}. {self._escape_html(title)}</div>\n'
                f'      <div class="url">{self._escape_html(rec.get("url", ""))}</div>\n'
                f'      <div class="timestamp">Captured: {self._escape_html(rec.get("timestamp", ""))}</div>\n'
                f'      <div class="links">{" ".join(links)}</div>\n'
                '    </div>'
            )

        style = (
            "body { font-family: Arial, sans-serif; max-width: 1100px; margin: 0 auto; padding: 20px; }\n"
            "    .entry { border: 1px solid #ddd; margin: 10px 0; padding: 12px; border-radius: 4px; }\n"
            "    .title { font-weight: bold; color: #2c5aa0; }\n"
            "    .url, .timestamp { color: #666; font-size: 0.9em; margin: 4px 0; }\n"
            "    .links a { margin-right: 14px; color: #2c5aa0; text-decoration: none; }"
        )
        return (
            "<!DOCTYPE html>\n<html lang=\"en\">\n<head>\n"
            "  <meta charset=\"UTF-8\">\n"
            "  <title>Unveil - Archived Pages</title>\n"
            f"  <style>\n    {style}\n  </style>\n"
            "</head>\n<body>\n"
            "  <h1>Archived Pages</h1>\n"
            f"  <p>Total: {len(records)} &middot; Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}</p>\n"
            + "\n".join(entries) +
            "\n</body>\n</html>\n"
        )

    def _escape_html(self, text: str) -> str:
        if not isinstance(text, str):
            text = str(text)
        return (text.replace('&', '&amp;')
                    .replace('<', '&lt;')
                    .replace('>', '&gt;')
                    .replace('"', '&quot;')
                    .replace("'", '&#x27;'))
