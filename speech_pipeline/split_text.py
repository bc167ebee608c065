from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Iterator, List, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_MAX_CHARS",
    "TextSegment",
    "iter_sentences",
    "chunk_text",
    "estimate_chunk_count",
]

DEFAULT_MAX_CHARS = 4000
SENTENCE_BOUNDARY_PATTERN = re.compile(r"[.!?]+\s+")


@dataclass(frozen=True)
class TextSegment:
    order: int
    text: str
    start_index: int
    end_index: int


def iter_sentences(text: str) -> Iterator[Tuple[int, str]]:
    """
    Lazily yield ``(offset, sentence)`` pairs from ``text``.

    A boundary is a run of ``.``, ``!`` or ``?`` directly followed by whitespace; the
    whitespace stays attached to the sentence it ends. Whatever follows the last
    boundary is yielded as a final sentence.

    Abbreviations are not special-cased: "Dr. Smith" is split after "Dr.". This is a
    known limitation of the heuristic.
    """
    last_index = 0
    for match in SENTENCE_BOUNDARY_PATTERN.finditer(text):
        yield last_index, text[last_index : match.end()]
        last_index = match.end()

    if last_index < len(text):
        yield last_index, text[last_index:]


def chunk_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> List[TextSegment]:
    """
    Pack consecutive sentences into segments of at most ``max_chars`` characters.

    Returns an empty list for empty or whitespace-only text. A sentence longer than
    ``max_chars`` is emitted whole as its own segment rather than cut mid-sentence;
    callers that need a hard limit must validate segment length themselves.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive.")

    if not text or not text.strip():
        return []

    segments: List[TextSegment] = []
    buffer = ""
    buffer_start = 0

    for offset, sentence in iter_sentences(text):
        if buffer and len(buffer) + len(sentence) > max_chars:
            segments.append(_make_segment(len(segments), buffer, buffer_start))
            buffer = ""

        if not buffer:
            buffer_start = offset
        buffer += sentence

    if buffer.strip():
        segments.append(_make_segment(len(segments), buffer, buffer_start))

    oversized = [segment.order for segment in segments if len(segment.text) > max_chars]
    if oversized:
        logger.warning(
            "Segments %s hold a single sentence longer than %d characters.",
            oversized,
            max_chars,
        )
    logger.debug("Split %d characters into %d segments.", len(text), len(segments))
    return segments


def estimate_chunk_count(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> int:
    """
    Cheap preview of how many segments ``text`` will need.

    Only a rough figure for display; ``chunk_text`` is authoritative.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive.")
    if not text:
        return 0
    return math.ceil(len(text) / max_chars)


def _make_segment(order: int, buffer: str, start: int) -> TextSegment:
    return TextSegment(
        order=order,
        text=buffer.strip(),
        start_index=start,
        end_index=start + len(buffer),
    )
