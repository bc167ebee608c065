from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .converter import ConversionConfig, ConversionJob
from .merger import StitchedArtifact
from .storage import StoredAudio
from .tts_engine import TtsEngine

__all__ = ["MetadataBuilder", "truncate_text", "text_hash"]

PREVIEW_CHARS = 100


def truncate_text(text: str, max_length: int = PREVIEW_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class MetadataBuilder:
    engine: TtsEngine
    config: ConversionConfig
    output_path: Optional[Path] = None

    def build_metadata(
        self,
        *,
        job: ConversionJob,
        artifact: Optional[StitchedArtifact],
        final_output: Optional[Path],
        options: Dict[str, object],
    ) -> Dict[str, object]:
        total_retries = sum(job.retries.values())

        metadata = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "job_id": job.job_id,
            "status": job.status.value,
            "progress": job.progress_percent,
            "engine": self.engine.descriptor(),
            "voice": job.voice_id,
            "format": artifact.audio_format if artifact else self.engine.audio_format,
            "input_path": str(options.get("input_path")) if options.get("input_path") else None,
            "input_chars": len(job.text),
            "segments": [
                {
                    "order": segment.order,
                    "chars": len(segment.text),
                    "start_index": segment.start_index,
                    "end_index": segment.end_index,
                    "duration_sec": (
                        job.fragments[segment.order].duration_seconds
                        if segment.order in job.fragments
                        else None
                    ),
                    "retries": job.retries.get(segment.order, 0),
                    "error": str(job.failures[segment.order]) if segment.order in job.failures else None,
                }
                for segment in job.segments
            ],
            "failed_orders": job.failed_orders,
            "final_output": str(final_output) if final_output else None,
            "estimated_duration_sec": artifact.total_duration_seconds if artifact else None,
            "measured_duration_sec": artifact.measured_duration_seconds if artifact else None,
            "retries": {"total": total_retries, "by_segment": {str(k): v for k, v in job.retries.items() if v}},
            "config": {
                "max_chars": self.config.max_chars,
                "max_retries": self.config.max_retries,
                "rate_limit_delay": self.config.rate_limit_delay,
                "stitch_strategy": options.get("strategy"),
            },
        }

        return metadata

    def write_metadata(self, metadata: Dict[str, object]) -> None:
        if self.output_path is None:
            raise ValueError("No metadata output path configured.")
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with self.output_path.open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)

    def build_record(self, job: ConversionJob, artifact: StitchedArtifact, *, now: float) -> StoredAudio:
        """
        Turn a finished job into the record persisted by ``AudioStore``.
        """
        return StoredAudio(
            id=job.job_id,
            text_preview=truncate_text(job.text),
            text_hash=text_hash(job.text),
            voice=job.voice_id,
            audio_format=artifact.audio_format,
            audio_data=base64.b64encode(artifact.audio_bytes).decode("ascii"),
            total_duration=artifact.total_duration_seconds,
            created_at=now,
            last_accessed_at=now,
            chunks=[
                {
                    "order": fragment.order,
                    "text": fragment.source_text,
                    "duration_seconds": fragment.duration_seconds,
                    "generated_at": fragment.produced_at,
                }
                for fragment in job.ordered_fragments()
            ],
        )
