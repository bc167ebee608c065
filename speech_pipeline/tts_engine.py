from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import requests
from pydub import AudioSegment

from .errors import (
    ErrorCode,
    InvalidInput,
    RateLimited,
    SynthesisError,
    TransientServiceError,
    Unauthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "MAX_INPUT_CHARS",
    "VOICE_PATTERN",
    "SynthesisResult",
    "validate_request",
    "validate_voice",
    "estimate_duration_seconds",
    "tts_configured",
    "TtsEngine",
    "GoogleCloudTtsEngine",
    "classify_google_error",
    "HttpTtsEngine",
    "MockTtsEngine",
]

MAX_INPUT_CHARS = 4000
VOICE_PATTERN = re.compile(r"^[a-z]{2}-[A-Z]{2}-(Wavenet|Neural2|Standard)-[A-Z]$")
WORDS_PER_MINUTE = 150
DEFAULT_RETRY_AFTER_SEC = 5.0


@dataclass(frozen=True)
class SynthesisResult:
    audio_bytes: bytes
    duration_seconds: float
    characters_used: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "SynthesisResult":
        """
        Build a result from the wire form ``{audioData, durationSeconds, charactersUsed}``.

        ``audioData`` is base64 text; raw bytes are accepted as-is.
        """
        data = payload.get("audioData")
        if not data:
            raise TransientServiceError("No audio content in response")
        if isinstance(data, str):
            try:
                audio_bytes = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise TransientServiceError("Response audioData is not valid base64") from exc
        else:
            audio_bytes = bytes(data)  # type: ignore[arg-type]
        return cls(
            audio_bytes=audio_bytes,
            duration_seconds=float(payload.get("durationSeconds") or 0.0),  # type: ignore[arg-type]
            characters_used=int(payload.get("charactersUsed") or 0),  # type: ignore[arg-type]
        )

    def to_payload(self) -> Dict[str, object]:
        return {
            "audioData": base64.b64encode(self.audio_bytes).decode("ascii"),
            "durationSeconds": self.duration_seconds,
            "charactersUsed": self.characters_used,
        }


def validate_voice(voice_id: str) -> None:
    if not voice_id or not VOICE_PATTERN.match(voice_id):
        raise ValidationError("Invalid voice selected", code=ErrorCode.INVALID_VOICE)


def validate_request(text: str, voice_id: str) -> None:
    """
    Gate applied before every synthesis call. All violations are non-retryable.
    """
    if not text or not text.strip():
        raise ValidationError("Please paste some text to convert", code=ErrorCode.TEXT_EMPTY)
    if len(text) > MAX_INPUT_CHARS:
        raise ValidationError(
            f"Text chunk too long (max {MAX_INPUT_CHARS} characters)",
            code=ErrorCode.TEXT_TOO_LONG,
        )
    validate_voice(voice_id)


def estimate_duration_seconds(text: str) -> float:
    # ~150 words per minute; never measured against the audio itself.
    word_count = len(text.split())
    return round(word_count / WORDS_PER_MINUTE * 60, 1)


def tts_configured(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return bool(
        env.get("GOOGLE_CLOUD_TTS_API_KEY")
        or env.get("GOOGLE_CLOUD_SERVICE_ACCOUNT")
        or env.get("GOOGLE_APPLICATION_CREDENTIALS")
    )


class TtsEngine(ABC):
    """
    Thin abstraction over a text-to-speech provider returning encoded audio bytes.
    """

    def __init__(self, *, audio_format: str = "mp3") -> None:
        self.audio_format = audio_format

    def synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        validate_request(text, voice_id)
        return self._synthesize(text, voice_id)

    @abstractmethod
    def _synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        """
        Call the provider. Raise a ``SynthesisError`` subclass on failure.
        """

    def descriptor(self) -> str:
        return self.__class__.__name__


class MockTtsEngine(TtsEngine):
    """
    Lightweight mock for tests and dry runs. Generates silent WAV audio whose length
    matches the word-count duration estimate.
    """

    def __init__(self, *, sample_rate: int = 22050, channels: int = 1) -> None:
        super().__init__(audio_format="wav")
        self._sample_rate = sample_rate
        self._channels = channels

    def _synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        duration = estimate_duration_seconds(text)
        segment = AudioSegment.silent(duration=int(duration * 1000), frame_rate=self._sample_rate)
        segment = segment.set_channels(self._channels)
        buffer = io.BytesIO()
        segment.export(buffer, format="wav")
        return SynthesisResult(
            audio_bytes=buffer.getvalue(),
            duration_seconds=duration,
            characters_used=len(text),
        )


class GoogleCloudTtsEngine(TtsEngine):
    """
    Google Cloud Text-to-Speech implementation producing MP3 audio.

    The client is created on first use from an API key, a service-account JSON
    document, or application default credentials, in that order.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        service_account_json: Optional[str] = None,
        sample_rate: int = 44100,
        effects_profile_id: str = "headphone-class-device",
        client: Optional[object] = None,
    ) -> None:
        super().__init__(audio_format="mp3")
        try:
            from google.cloud import texttospeech  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "google-cloud-texttospeech is required for GoogleCloudTtsEngine but is not installed."
            ) from exc

        self._texttospeech = texttospeech
        self._api_key = api_key
        self._service_account_json = service_account_json
        self._sample_rate = sample_rate
        self._effects_profile_id = effects_profile_id
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _create_client(self):
        texttospeech = self._texttospeech
        if self._api_key:
            return texttospeech.TextToSpeechClient(client_options={"api_key": self._api_key})
        if self._service_account_json:
            from google.oauth2 import service_account  # type: ignore

            info = json.loads(self._service_account_json)
            credentials = service_account.Credentials.from_service_account_info(info)
            return texttospeech.TextToSpeechClient(credentials=credentials)
        if os.environ.get("GOOGLE_APPLICATION_CREDENTIALS"):
            return texttospeech.TextToSpeechClient()
        raise Unauthorized("Google Cloud TTS credentials not configured")

    def _synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        from google.api_core import exceptions as google_exceptions  # type: ignore

        texttospeech = self._texttospeech
        synthesis_input = texttospeech.SynthesisInput(text=text)
        voice = texttospeech.VoiceSelectionParams(language_code=voice_id[:5], name=voice_id)
        audio_config = texttospeech.AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.MP3,
            sample_rate_hertz=self._sample_rate,
            effects_profile_id=[self._effects_profile_id],
        )

        logger.debug("Google TTS request: voice=%s chars=%d", voice_id, len(text))
        try:
            response = self.client.synthesize_speech(
                input=synthesis_input, voice=voice, audio_config=audio_config
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise classify_google_error(exc) from exc

        if not response.audio_content:
            raise TransientServiceError("No audio content in response")

        return SynthesisResult(
            audio_bytes=bytes(response.audio_content),
            duration_seconds=estimate_duration_seconds(text),
            characters_used=len(text),
        )


def classify_google_error(exc: BaseException) -> SynthesisError:
    from google.api_core import exceptions as google_exceptions  # type: ignore

    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return RateLimited(retry_after=DEFAULT_RETRY_AFTER_SEC)
    if isinstance(exc, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return Unauthorized("Service temporarily unavailable")
    if isinstance(exc, google_exceptions.InvalidArgument):
        return InvalidInput(f"Provider rejected the request: {exc}")
    return TransientServiceError("Conversion failed. Please try again.")


class HttpTtsEngine(TtsEngine):
    """
    Client for the HTTP passthrough service (``POST /api/tts-chunk``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
        audio_format: str = "mp3",
    ) -> None:
        super().__init__(audio_format=audio_format)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def descriptor(self) -> str:
        return f"{self.__class__.__name__}({self._base_url})"

    def _synthesize(self, text: str, voice_id: str) -> SynthesisResult:
        url = f"{self._base_url}/api/tts-chunk"
        payload = {"text": text, "voice": voice_id, "format": self.audio_format}
        try:
            response = self.session.post(url, json=payload, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            raise TransientServiceError(
                f"Request to {url} failed: {exc}", code=ErrorCode.NETWORK_ERROR
            ) from exc

        if response.status_code == 200:
            return SynthesisResult.from_payload(response.json())

        body = _error_body(response)
        message = str(body.get("error") or f"HTTP {response.status_code}")
        logger.debug("TTS service error %d: %s", response.status_code, body)

        if response.status_code == 429:
            raise RateLimited(message, retry_after=_retry_after(response, body))
        if response.status_code == 400:
            raise ValidationError(message, code=_error_code(body.get("code"), ErrorCode.TEXT_EMPTY))
        if response.status_code in (401, 403):
            raise Unauthorized(message)
        if body.get("retryable", response.status_code >= 500):
            raise TransientServiceError(message)
        raise InvalidInput(message)

    def health(self) -> Dict[str, object]:
        response = self.session.get(f"{self._base_url}/api/health", timeout=self._timeout)
        response.raise_for_status()
        return response.json()


def _error_body(response: requests.Response) -> Dict[str, object]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _retry_after(response: requests.Response, body: Mapping[str, object]) -> float:
    for value in (body.get("retryAfter"), response.headers.get("Retry-After")):
        if value is None:
            continue
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.warning("Unable to parse retry delay %r", value)
    return DEFAULT_RETRY_AFTER_SEC


def _error_code(value: object, default: ErrorCode) -> ErrorCode:
    try:
        return ErrorCode(value)
    except ValueError:
        return default
