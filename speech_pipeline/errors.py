"""Error types shared across the speech pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional

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
]


class ErrorCode(str, Enum):
    TEXT_EMPTY = "TEXT_EMPTY"
    TEXT_TOO_LONG = "TEXT_TOO_LONG"
    INVALID_VOICE = "INVALID_VOICE"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    STORAGE_FULL = "STORAGE_FULL"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUDIO_DECODE_ERROR = "AUDIO_DECODE_ERROR"
    EMPTY_INPUT = "EMPTY_INPUT"


class SpeechPipelineError(RuntimeError):
    """
    Base error carrying the wire-level fields clients rely on.
    """

    default_code = ErrorCode.API_ERROR
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = retry_after

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "error": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class ValidationError(SpeechPipelineError):
    default_code = ErrorCode.TEXT_EMPTY


class SynthesisError(SpeechPipelineError):
    """Failure reported by (or while talking to) the synthesis provider."""


class RateLimited(SynthesisError):
    default_code = ErrorCode.RATE_LIMIT
    default_retryable = True

    def __init__(self, message: str = "Too many requests. Please wait.", *, retry_after: Optional[float] = None) -> None:
        super().__init__(message, retry_after=retry_after)


class TransientServiceError(SynthesisError):
    default_retryable = True


class InvalidInput(SynthesisError):
    pass


class Unauthorized(SynthesisError):
    default_code = ErrorCode.UNAUTHORIZED


class PermanentSegmentFailure(SpeechPipelineError):
    """
    A single segment could not be synthesized.

    Collected per segment by the converter; never aborts the whole job on its own.
    """

    def __init__(self, order: int, *, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"Segment {order} failed after {attempts} attempt(s): {cause}",
            code=cause.code if isinstance(cause, SpeechPipelineError) else ErrorCode.API_ERROR,
        )
        self.order = order
        self.attempts = attempts
        self.cause = cause


class DecodeError(SpeechPipelineError):
    default_code = ErrorCode.AUDIO_DECODE_ERROR

    def __init__(self, order: int, detail: str = "") -> None:
        message = f"Audio fragment {order} could not be decoded"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.order = order


class EmptyInput(SpeechPipelineError):
    default_code = ErrorCode.EMPTY_INPUT


class ConversionFailed(SpeechPipelineError):
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        failed_orders: Iterable[int] = (),
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message, code=code, retryable=retryable)
        self.failed_orders: List[int] = sorted(failed_orders)

    @property
    def failed_count(self) -> int:
        return len(self.failed_orders)
