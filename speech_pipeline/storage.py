"""
Capacity-bounded persistence for finished conversions.

Records live in a single JSON file. The serialized size is kept under a byte budget by
evicting the least-recently accessed records; storage is best-effort, so a record that
cannot fit is dropped with a warning instead of raising.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["StoredAudio", "AudioStore", "DEFAULT_MAX_BYTES", "DEFAULT_EVICTION_THRESHOLD"]

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_EVICTION_THRESHOLD = 0.8


@dataclass
class StoredAudio:
    id: str
    text_preview: str
    text_hash: str
    voice: str
    audio_format: str
    audio_data: str  # base64
    total_duration: float
    created_at: float
    last_accessed_at: float
    chunks: List[Dict[str, object]] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "text_preview": self.text_preview,
            "created_at": self.created_at,
            "total_duration": self.total_duration,
            "voice": self.voice,
        }


class AudioStore:
    def __init__(
        self,
        path: Path,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        eviction_threshold: float = DEFAULT_EVICTION_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive.")
        if not 0 < eviction_threshold <= 1:
            raise ValueError("eviction_threshold must be within (0, 1].")
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.eviction_threshold = eviction_threshold
        self._clock = clock

    def put(self, record: StoredAudio) -> bool:
        """
        Insert or replace ``record``. Returns whether it survived eviction.
        """
        records = [existing for existing in self._load() if existing.id != record.id]
        records.append(record)

        serialized = _serialize(records)
        soft_limit = self.max_bytes * self.eviction_threshold
        while _size(serialized) > soft_limit and len(records) > 1:
            evicted = self._pop_least_recent(records)
            logger.info("Evicted stored audio %s to free space.", evicted.id)
            serialized = _serialize(records)

        while _size(serialized) > self.max_bytes and records:
            evicted = self._pop_least_recent(records)
            logger.warning(
                "Store budget of %d bytes exceeded; dropping stored audio %s.",
                self.max_bytes,
                evicted.id,
            )
            serialized = _serialize(records)

        self._write(serialized)
        kept = any(existing.id == record.id for existing in records)
        if not kept:
            logger.warning("Cannot store audio %s - it does not fit in the store.", record.id)
        return kept

    def get(self, record_id: str) -> Optional[StoredAudio]:
        for record in self._load():
            if record.id == record_id:
                record.last_accessed_at = self._clock()
                if not self.put(record):
                    return None
                return record
        return None

    def list(self) -> List[Dict[str, object]]:
        summaries = [record.summary() for record in self._load()]
        return sorted(summaries, key=lambda summary: summary["created_at"], reverse=True)

    def delete(self, record_id: str) -> bool:
        records = self._load()
        remaining = [record for record in records if record.id != record_id]
        if len(remaining) == len(records):
            return False
        self._write(_serialize(remaining))
        return True

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def usage_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def usage_percent(self) -> int:
        return round(self.usage_bytes() / self.max_bytes * 100)

    def _load(self) -> List[StoredAudio]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            return [StoredAudio(**item) for item in raw]
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Failed to parse stored audios in %s: %s", self.path, exc)
            return []

    def _write(self, serialized: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            f.write(serialized)

    @staticmethod
    def _pop_least_recent(records: List[StoredAudio]) -> StoredAudio:
        index = min(range(len(records)), key=lambda i: records[i].last_accessed_at)
        return records.pop(index)


def _serialize(records: List[StoredAudio]) -> str:
    return json.dumps([asdict(record) for record in records], ensure_ascii=False)


def _size(serialized: str) -> int:
    return len(serialized.encode("utf-8"))
