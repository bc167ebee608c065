"""
Long-text speech synthesis pipeline.

This package exposes the main building blocks used by the CLI entry point:

- Sentence-aware text chunking (`split_text`).
- Engine abstractions, request validation and concrete providers (`tts_engine`).
- The conversion loop with retry and progress reporting (`converter`).
- Audio fragment stitching (`merger`).
- Capacity-bounded storage of finished audio (`storage`).
- Metadata helpers (`metadata`).
"""

from .errors import (
    ConversionFailed,
    DecodeError,
    EmptyInput,
    ErrorCode,
    InvalidInput,
    PermanentSegmentFailure,
    RateLimited,
    SpeechPipelineError,
    SynthesisError,
    TransientServiceError,
    Unauthorized,
    ValidationError,
)
from .split_text import TextSegment, chunk_text, estimate_chunk_count, iter_sentences
from .tts_engine import (
    GoogleCloudTtsEngine,
    HttpTtsEngine,
    MockTtsEngine,
    SynthesisResult,
    TtsEngine,
    validate_request,
)
from .merger import (
    AudioFragment,
    AudioStitcher,
    StitchedArtifact,
    StitchStrategy,
    merge_audio_fragments,
)
from .converter import ConversionConfig, ConversionJob, ConversionStatus, SpeechConverter
from .storage import AudioStore, StoredAudio
from .metadata import MetadataBuilder

__all__ = [
    "ErrorCode",
    "SpeechPipelineError",
    "ValidationError",
    "SynthesisError",
    "RateLimited",
    "TransientServiceError",
    "InvalidInput",
    "Unauthorized",
    "PermanentSegmentFailure",
    "DecodeError",
    "EmptyInput",
    "ConversionFailed",
    "TextSegment",
    "iter_sentences",
    "chunk_text",
    "estimate_chunk_count",
    "SynthesisResult",
    "validate_request",
    "TtsEngine",
    "GoogleCloudTtsEngine",
    "HttpTtsEngine",
    "MockTtsEngine",
    "AudioFragment",
    "StitchedArtifact",
    "StitchStrategy",
    "AudioStitcher",
    "merge_audio_fragments",
    "ConversionConfig",
    "ConversionJob",
    "ConversionStatus",
    "SpeechConverter",
    "AudioStore",
    "StoredAudio",
    "MetadataBuilder",
]
