from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import split_text
from .errors import (
    ConversionFailed,
    ErrorCode,
    InvalidInput,
    PermanentSegmentFailure,
    RateLimited,
    Unauthorized,
    ValidationError,
)
from .merger import AudioFragment, AudioStitcher, StitchedArtifact
from .split_text import TextSegment
from .tts_engine import MAX_INPUT_CHARS, TtsEngine, validate_voice

logger = logging.getLogger(__name__)

__all__ = [
    "ConversionStatus",
    "ConversionConfig",
    "ConversionJob",
    "SpeechConverter",
]

NON_RETRYABLE_ERRORS = (ValidationError, InvalidInput, Unauthorized)


class ConversionStatus(str, Enum):
    IDLE = "idle"
    SPLITTING = "splitting"
    PROCESSING = "processing"
    STITCHING = "stitching"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ConversionConfig:
    """
    Limits and retry policy for one conversion run.
    """

    max_chars: int = split_text.DEFAULT_MAX_CHARS
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    rate_limit_delay: float = 5.0
    max_rate_limit_retries: int = 10

    def validate(self) -> None:
        if self.max_chars <= 0:
            raise ValueError("max_chars must be positive.")
        if self.max_chars > MAX_INPUT_CHARS:
            raise ValueError(f"max_chars must not exceed {MAX_INPUT_CHARS}, the per-request limit.")
        if self.max_retries <= 0:
            raise ValueError("max_retries must be positive.")
        if self.max_rate_limit_retries < 0:
            raise ValueError("max_rate_limit_retries must not be negative.")
        if self.initial_retry_delay < 0 or self.rate_limit_delay < 0:
            raise ValueError("Retry delays must not be negative.")


@dataclass
class ConversionJob:
    text: str
    voice_id: str
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    segments: List[TextSegment] = field(default_factory=list)
    fragments: Dict[int, AudioFragment] = field(default_factory=dict)
    failures: Dict[int, PermanentSegmentFailure] = field(default_factory=dict)
    retries: Dict[int, int] = field(default_factory=dict)
    status: ConversionStatus = ConversionStatus.IDLE
    progress_percent: int = 0
    artifact: Optional[StitchedArtifact] = None

    @property
    def total_segments(self) -> int:
        return len(self.segments)

    @property
    def resolved_count(self) -> int:
        return len(self.fragments) + len(self.failures)

    @property
    def failed_orders(self) -> List[int]:
        return sorted(self.failures)

    @property
    def pending_orders(self) -> List[int]:
        return [
            segment.order
            for segment in self.segments
            if segment.order not in self.fragments and segment.order not in self.failures
        ]

    def ordered_fragments(self) -> List[AudioFragment]:
        return [self.fragments[order] for order in sorted(self.fragments)]

    def record_success(self, fragment: AudioFragment) -> None:
        self._ensure_pending(fragment.order)
        self.fragments[fragment.order] = fragment
        self._update_progress()

    def record_failure(self, failure: PermanentSegmentFailure) -> None:
        self._ensure_pending(failure.order)
        self.failures[failure.order] = failure
        self._update_progress()

    def _ensure_pending(self, order: int) -> None:
        if order in self.fragments or order in self.failures:
            raise ValueError(f"Segment {order} has already been resolved.")

    def _update_progress(self) -> None:
        if not self.segments:
            return
        # Half-up rounding; Python's round() would round 12.5 down to 12.
        percent = int(100 * self.resolved_count / self.total_segments + 0.5)
        self.progress_percent = max(self.progress_percent, percent)


ProgressCallback = Callable[[ConversionJob], None]


class SpeechConverter:
    """
    Drives a conversion job: split, synthesize each segment in order, stitch.

    Segments are sent to the engine strictly one at a time. A segment that fails
    permanently is recorded and the loop moves on; the job fails as a whole once
    every segment has been attempted.
    """

    def __init__(
        self,
        engine: TtsEngine,
        config: Optional[ConversionConfig] = None,
        *,
        stitcher: Optional[AudioStitcher] = None,
        progress_callback: Optional[ProgressCallback] = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.config = config or ConversionConfig()
        self.config.validate()
        self.stitcher = stitcher or AudioStitcher()
        self.progress_callback = progress_callback
        self._sleep = sleeper
        self._clock = clock

    def convert(self, text: str, voice_id: str) -> StitchedArtifact:
        job = self.run(ConversionJob(text=text, voice_id=voice_id))
        return job.artifact  # type: ignore[return-value]

    def run(self, job: ConversionJob) -> ConversionJob:
        try:
            validate_voice(job.voice_id)
        except ValidationError:
            self._set_status(job, ConversionStatus.FAILED)
            raise

        self._set_status(job, ConversionStatus.SPLITTING)
        job.segments = split_text.chunk_text(job.text, max_chars=self.config.max_chars)
        if not job.segments:
            self._set_status(job, ConversionStatus.FAILED)
            raise ConversionFailed(
                "Nothing to convert", code=ErrorCode.TEXT_EMPTY, retryable=False
            )

        logger.info("Job %s: converting %d segments.", job.job_id, job.total_segments)
        self._set_status(job, ConversionStatus.PROCESSING)

        for segment in sorted(job.segments, key=lambda item: item.order):
            logger.debug(
                "Job %s: segment %d/%d (%d chars).",
                job.job_id,
                segment.order + 1,
                job.total_segments,
                len(segment.text),
            )
            try:
                fragment = self._synthesize_with_retry(job, segment)
            except PermanentSegmentFailure as failure:
                logger.error("Job %s: %s", job.job_id, failure)
                job.record_failure(failure)
            else:
                job.record_success(fragment)
            self._notify(job)

        if job.failures:
            self._set_status(job, ConversionStatus.FAILED)
            raise ConversionFailed(
                f"Failed to convert {len(job.failures)} chunk(s). Try again.",
                failed_orders=job.failed_orders,
            )

        self._set_status(job, ConversionStatus.STITCHING)
        try:
            job.artifact = self.stitcher.stitch(job.ordered_fragments())
        except Exception:
            self._set_status(job, ConversionStatus.FAILED)
            raise

        job.progress_percent = 100
        self._set_status(job, ConversionStatus.COMPLETE)
        logger.info(
            "Job %s complete: %d fragments, ~%.1fs of audio.",
            job.job_id,
            job.artifact.fragment_count,
            job.artifact.total_duration_seconds,
        )
        return job

    def _synthesize_with_retry(self, job: ConversionJob, segment: TextSegment) -> AudioFragment:
        attempts = 0
        rate_limit_hits = 0
        delay = self.config.initial_retry_delay

        while True:
            attempts += 1
            try:
                result = self.engine.synthesize(segment.text, job.voice_id)
            except RateLimited as exc:
                # Waiting out a rate limit does not count against max_retries.
                rate_limit_hits += 1
                if rate_limit_hits > self.config.max_rate_limit_retries:
                    raise PermanentSegmentFailure(segment.order, attempts=attempts, cause=exc) from exc
                wait = exc.retry_after
                if wait is None:
                    wait = self.config.rate_limit_delay * (
                        self.config.retry_backoff_factor ** (rate_limit_hits - 1)
                    )
                logger.warning(
                    "Rate limited on segment %d (hit %d/%d). Retrying in %.2fs.",
                    segment.order,
                    rate_limit_hits,
                    self.config.max_rate_limit_retries,
                    wait,
                )
                job.retries[segment.order] = job.retries.get(segment.order, 0) + 1
                self._sleep(wait)
                continue
            except NON_RETRYABLE_ERRORS as exc:
                raise PermanentSegmentFailure(segment.order, attempts=attempts, cause=exc) from exc
            except Exception as exc:
                transient_attempts = attempts - rate_limit_hits
                if transient_attempts >= self.config.max_retries:
                    logger.error(
                        "Synthesis of segment %d permanently failed after %d attempts.",
                        segment.order,
                        transient_attempts,
                    )
                    raise PermanentSegmentFailure(segment.order, attempts=attempts, cause=exc) from exc
                logger.warning(
                    "Synthesis of segment %d failed (attempt %d/%d): %s. Retrying in %.2fs.",
                    segment.order,
                    transient_attempts,
                    self.config.max_retries,
                    exc,
                    delay,
                )
                job.retries[segment.order] = job.retries.get(segment.order, 0) + 1
                self._sleep(delay)
                delay *= self.config.retry_backoff_factor
                continue

            return AudioFragment(
                order=segment.order,
                audio_bytes=result.audio_bytes,
                source_text=segment.text,
                duration_seconds=result.duration_seconds,
                produced_at=self._clock(),
                audio_format=self.engine.audio_format,
            )

    def _set_status(self, job: ConversionJob, status: ConversionStatus) -> None:
        logger.debug("Job %s: %s -> %s", job.job_id, job.status.value, status.value)
        job.status = status
        self._notify(job)

    def _notify(self, job: ConversionJob) -> None:
        if self.progress_callback is not None:
            self.progress_callback(job)
