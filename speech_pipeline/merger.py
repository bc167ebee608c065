"""
Reassembly of independently encoded audio fragments into one track.

Two strategies are supported:

- ``StitchStrategy.TRANSCODE`` (default): decode every fragment, bring it to a common
  frame rate / channel layout, join the samples end-to-end and encode once at a fixed
  bitrate. Works for any format ffmpeg (or pydub's native WAV reader) can decode.
- ``StitchStrategy.CONCAT``: join the encoded bytes directly. Only safe for encodings
  without per-file header or trailer state: MPEG audio (frames are self-contained,
  assuming the provider emits no ID3 tags or VBR/Xing header) and headerless PCM.
  WAV, OGG and friends are rejected.

"Seamless" here means no inserted silence and no reordering, not crossfading.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from .errors import DecodeError, EmptyInput

logger = logging.getLogger(__name__)

__all__ = [
    "BYTE_CONCAT_SAFE_FORMATS",
    "AudioFragment",
    "StitchedArtifact",
    "StitchStrategy",
    "AudioStitcher",
    "merge_audio_fragments",
    "float_to_int16",
    "int16_to_float",
]

BYTE_CONCAT_SAFE_FORMATS = frozenset({"mp3", "raw", "pcm"})
INT16_POSITIVE_SCALE = 32767
INT16_NEGATIVE_SCALE = 32768


@dataclass(frozen=True)
class AudioFragment:
    order: int
    audio_bytes: bytes
    source_text: str = ""
    duration_seconds: float = 0.0
    produced_at: float = field(default_factory=time.time)
    audio_format: str = "mp3"


@dataclass(frozen=True)
class StitchedArtifact:
    audio_bytes: bytes
    total_duration_seconds: float
    audio_format: str
    fragment_count: int
    # Only known on the transcode path; total_duration_seconds is an estimate.
    measured_duration_seconds: Optional[float] = None


class StitchStrategy(str, Enum):
    CONCAT = "concat"
    TRANSCODE = "transcode"


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """
    Map float samples in [-1, 1] to signed 16-bit integers.

    Positive values scale by 32767 and negative values by 32768, after clamping.
    The asymmetry matches the common Web Audio encoder and must not be "fixed".
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(
        clipped < 0,
        clipped * INT16_NEGATIVE_SCALE,
        clipped * INT16_POSITIVE_SCALE,
    )
    # np.round is half-to-even; add/floor gives the half-up rounding of the reference encoder.
    return np.floor(scaled + 0.5).astype(np.int16)


def int16_to_float(samples: np.ndarray) -> np.ndarray:
    return np.asarray(samples, dtype=np.float32) / float(INT16_NEGATIVE_SCALE)


class AudioStitcher:
    def __init__(
        self,
        strategy: StitchStrategy = StitchStrategy.TRANSCODE,
        *,
        input_format: Optional[str] = None,
        output_format: str = "mp3",
        frame_rate: int = 44100,
        channels: int = 1,
        bitrate: str = "128k",
    ) -> None:
        self.strategy = StitchStrategy(strategy)
        self.input_format = input_format.lower() if input_format else None
        self.output_format = output_format.lower()
        self.frame_rate = frame_rate
        self.channels = channels
        self.bitrate = bitrate

        if self.strategy is StitchStrategy.CONCAT and self.input_format is not None:
            _ensure_concat_safe(self.input_format)

    def stitch(self, fragments: Sequence[AudioFragment]) -> StitchedArtifact:
        if not fragments:
            raise EmptyInput("No audio chunks to stitch")

        ordered = sorted(fragments, key=lambda fragment: fragment.order)
        orders = [fragment.order for fragment in ordered]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Duplicate fragment orders in {orders}")

        total_duration = sum(fragment.duration_seconds for fragment in ordered)

        if len(ordered) == 1:
            only = ordered[0]
            logger.info("Single fragment; passing %d bytes through unchanged.", len(only.audio_bytes))
            return StitchedArtifact(
                audio_bytes=only.audio_bytes,
                total_duration_seconds=total_duration,
                audio_format=only.audio_format,
                fragment_count=1,
            )

        if self.strategy is StitchStrategy.CONCAT:
            return self._concatenate(ordered, total_duration)
        return self._transcode(ordered, total_duration)

    def _concatenate(self, ordered: List[AudioFragment], total_duration: float) -> StitchedArtifact:
        formats = {self._fragment_format(fragment) for fragment in ordered}
        if len(formats) != 1:
            raise ValueError(f"Cannot byte-concatenate mixed formats: {sorted(formats)}")
        audio_format = formats.pop()
        _ensure_concat_safe(audio_format)

        data = b"".join(fragment.audio_bytes for fragment in ordered)
        logger.info("Concatenated %d fragments into %d bytes of %s.", len(ordered), len(data), audio_format)
        return StitchedArtifact(
            audio_bytes=data,
            total_duration_seconds=total_duration,
            audio_format=audio_format,
            fragment_count=len(ordered),
        )

    def _transcode(self, ordered: List[AudioFragment], total_duration: float) -> StitchedArtifact:
        sample_buffers = [int16_to_float(self._decode_samples(fragment)) for fragment in ordered]
        samples = np.concatenate(sample_buffers)
        pcm = float_to_int16(samples)

        combined = AudioSegment(
            data=pcm.tobytes(),
            sample_width=2,
            frame_rate=self.frame_rate,
            channels=self.channels,
        )
        buffer = io.BytesIO()
        if self.output_format in ("wav", "raw"):
            combined.export(buffer, format=self.output_format)
        else:
            combined.export(buffer, format=self.output_format, bitrate=self.bitrate)

        measured = len(pcm) / float(self.frame_rate * self.channels)
        logger.info(
            "Re-encoded %d fragments into %s (%.2fs measured, %.2fs estimated).",
            len(ordered),
            self.output_format,
            measured,
            total_duration,
        )
        return StitchedArtifact(
            audio_bytes=buffer.getvalue(),
            total_duration_seconds=total_duration,
            audio_format=self.output_format,
            fragment_count=len(ordered),
            measured_duration_seconds=measured,
        )

    def _decode_samples(self, fragment: AudioFragment) -> np.ndarray:
        audio_format = self._fragment_format(fragment)
        try:
            if audio_format in ("raw", "pcm"):
                # Headerless PCM is assumed to already be 16-bit at the target layout.
                segment = AudioSegment(
                    data=fragment.audio_bytes,
                    sample_width=2,
                    frame_rate=self.frame_rate,
                    channels=self.channels,
                )
            else:
                segment = AudioSegment.from_file(io.BytesIO(fragment.audio_bytes), format=audio_format)
        except (CouldntDecodeError, OSError, ValueError) as exc:
            logger.error("Failed to decode fragment %d (%s).", fragment.order, audio_format)
            raise DecodeError(fragment.order, str(exc)) from exc

        segment = (
            segment.set_frame_rate(self.frame_rate)
            .set_channels(self.channels)
            .set_sample_width(2)
        )
        logger.debug(
            "Decoded fragment %d: %d ms at %d Hz.", fragment.order, len(segment), segment.frame_rate
        )
        return np.array(segment.get_array_of_samples(), dtype=np.int16)

    def _fragment_format(self, fragment: AudioFragment) -> str:
        return (self.input_format or fragment.audio_format or "mp3").lower()


def merge_audio_fragments(
    fragments: Sequence[AudioFragment],
    *,
    strategy: StitchStrategy = StitchStrategy.TRANSCODE,
    output_format: str = "mp3",
    frame_rate: int = 44100,
    channels: int = 1,
    bitrate: str = "128k",
) -> StitchedArtifact:
    stitcher = AudioStitcher(
        strategy,
        output_format=output_format,
        frame_rate=frame_rate,
        channels=channels,
        bitrate=bitrate,
    )
    return stitcher.stitch(fragments)


def _ensure_concat_safe(audio_format: str) -> None:
    if audio_format not in BYTE_CONCAT_SAFE_FORMATS:
        raise ValueError(
            f"Byte concatenation is not safe for {audio_format!r}; "
            f"use the transcode strategy (safe formats: {sorted(BYTE_CONCAT_SAFE_FORMATS)})."
        )
