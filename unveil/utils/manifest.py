"""
Capture history: an append-only JSON Lines file with one ArchiveRecord per
successful capture. Records are never rewritten; the latest line for an
archive id wins.
"""

import json
import os
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any, Iterable, List


DEFAULT_MANIFEST_NAME = "manifest.jsonl"


@dataclass(frozen=True)
class ArchiveRecord:
    archive_id: str
    url: str
    normalized_url: str
    timestamp: str
    artifacts: Dict[str, str] = field(default_factory=dict)
    title: str = ""
    width: int = 0
    height: int = 0
    user_agent: str = ""
    viewport: Dict[str, Any] = field(default_factory=dict)
    stages_failed: List[str] = field(default_factory=list)
    pdf_engine: Optional[str] = None


class Manifest:
    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        os.makedirs(self.output_dir, exist_ok=True)
        self.path = os.path.join(self.output_dir, DEFAULT_MANIFEST_NAME)

    def append(self, rec: ArchiveRecord) -> None:
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(asdict(rec), ensure_ascii=False) + "\n")

    def iter_records(self) -> Iterable[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    def latest_for(self, archive_id: str) -> Optional[Dict[str, Any]]:
        latest = None
        for rec in self.iter_records():
            if rec.get('archive_id') == archive_id:
                latest = rec
        return latest

    def latest_records(self) -> List[Dict[str, Any]]:
        """Latest record per archive id, in first-capture order."""
        latest: Dict[str, Dict[str, Any]] = {}
        for rec in self.iter_records():
            key = rec.get('archive_id')
            if key:
                latest[key] = rec
        return list(latest.values())
