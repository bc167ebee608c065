from collections import defaultdict

import pytest

from speech_pipeline.converter import ConversionConfig, ConversionJob, ConversionStatus, SpeechConverter
from speech_pipeline.errors import (
    ConversionFailed,
    DecodeError,
    ErrorCode,
    InvalidInput,
    RateLimited,
    TransientServiceError,
    ValidationError,
)
from speech_pipeline.merger import AudioFragment, AudioStitcher, StitchStrategy
from speech_pipeline.tts_engine import SynthesisResult, TtsEngine

FIVE_SENTENCES = "Alpha one. Bravo two. Charlie three. Delta four. Echo five."
VOICE = "en-US-Wavenet-D"


class ScriptedEngine(TtsEngine):
    """
    Returns ``frame-<n>`` payloads; per-text scripts raise errors before succeeding.
    """

    def __init__(self, *, scripts=None, always_fail=None, durations=None, audio_format="mp3"):
        super().__init__(audio_format=audio_format)
        self.scripts = {text: list(errors) for text, errors in (scripts or {}).items()}
        self.always_fail = always_fail or {}
        self.durations = list(durations or [])
        self.calls = defaultdict(int)
        self.successes = 0

    def _synthesize(self, text, voice_id):
        self.calls[text] += 1
        if text in self.always_fail:
            raise self.always_fail[text]
        pending = self.scripts.get(text)
        if pending:
            raise pending.pop(0)
        duration = self.durations[self.successes] if self.durations else 1.0
        payload = f"frame-{self.successes}".encode("ascii")
        self.successes += 1
        return SynthesisResult(audio_bytes=payload, duration_seconds=duration, characters_used=len(text))


def _converter(engine, *, history=None, sleeps=None, **config):
    options = {"max_chars": 15, "initial_retry_delay": 0.0, "rate_limit_delay": 0.0}
    options.update(config)
    return SpeechConverter(
        engine,
        ConversionConfig(**options),
        stitcher=AudioStitcher(StitchStrategy.CONCAT),
        progress_callback=(lambda job: history.append((job.status, job.progress_percent))) if history is not None else None,
        sleeper=sleeps.append if sleeps is not None else (lambda _: None),
        clock=lambda: 1700000000.0,
    )


def test_one_bad_segment_does_not_abort_the_job():
    engine = ScriptedEngine(always_fail={"Charlie three.": InvalidInput("rejected")})
    history = []
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    with pytest.raises(ConversionFailed) as excinfo:
        _converter(engine, history=history).run(job)

    assert excinfo.value.failed_orders == [2]
    assert excinfo.value.failed_count == 1
    assert excinfo.value.retryable is True
    assert job.status is ConversionStatus.FAILED
    assert sorted(job.fragments) == [0, 1, 3, 4]
    assert job.failed_orders == [2]
    assert job.pending_orders == []
    assert job.progress_percent == 100
    assert engine.calls["Charlie three."] == 1

    progress = [percent for _, percent in history]
    assert progress == sorted(progress)
    assert ConversionStatus.STITCHING not in [status for status, _ in history]


def test_rate_limited_segment_is_retried_transparently():
    engine = ScriptedEngine(
        scripts={"Bravo two.": [RateLimited(retry_after=0.5), RateLimited(retry_after=0.5)]}
    )
    sleeps = []
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    _converter(engine, sleeps=sleeps).run(job)

    assert job.status is ConversionStatus.COMPLETE
    assert job.failed_orders == []
    assert sorted(job.fragments) == [0, 1, 2, 3, 4]
    assert job.fragments[1].source_text == "Bravo two."
    assert engine.calls["Bravo two."] == 3
    assert job.retries[1] == 2
    assert sleeps == [0.5, 0.5]
    assert job.artifact.fragment_count == 5


def test_rate_limit_without_hint_backs_off():
    engine = ScriptedEngine(scripts={"Alpha one.": [RateLimited(), RateLimited()]})
    sleeps = []

    _converter(engine, sleeps=sleeps, rate_limit_delay=5.0, retry_backoff_factor=2.0).convert(
        FIVE_SENTENCES, VOICE
    )

    assert sleeps == [5.0, 10.0]


def test_rate_limit_budget_is_bounded():
    engine = ScriptedEngine(always_fail={"Echo five.": RateLimited(retry_after=0.0)})
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    with pytest.raises(ConversionFailed):
        _converter(engine, max_rate_limit_retries=2).run(job)

    assert engine.calls["Echo five."] == 3
    assert job.failed_orders == [4]


def test_transient_errors_back_off_then_fail_permanently():
    engine = ScriptedEngine(always_fail={"Delta four.": TransientServiceError("unavailable")})
    sleeps = []
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    with pytest.raises(ConversionFailed) as excinfo:
        _converter(engine, sleeps=sleeps, max_retries=3, initial_retry_delay=1.0).run(job)

    assert excinfo.value.failed_orders == [3]
    assert engine.calls["Delta four."] == 3
    assert sleeps == [1.0, 2.0]
    assert job.failures[3].attempts == 3
    assert isinstance(job.failures[3].cause, TransientServiceError)


def test_unclassified_errors_are_retried():
    engine = ScriptedEngine(scripts={"Echo five.": [ConnectionError("reset")]})
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    _converter(engine).run(job)

    assert job.status is ConversionStatus.COMPLETE
    assert engine.calls["Echo five."] == 2


def test_end_to_end_nine_thousand_characters():
    text = "This is a test sentence. " * 360
    engine = ScriptedEngine(durations=[10.0, 11.5, 3.25])
    history = []
    job = ConversionJob(text=text, voice_id=VOICE)

    _converter(engine, history=history, max_chars=4000).run(job)

    assert len(job.segments) == 3
    assert [fragment.order for fragment in job.ordered_fragments()] == [0, 1, 2]
    assert job.artifact.audio_bytes == b"frame-0frame-1frame-2"
    assert job.artifact.total_duration_seconds == pytest.approx(10.0 + 11.5 + 3.25)
    assert job.progress_percent == 100

    statuses = [status for status, _ in history]
    assert statuses[0] is ConversionStatus.SPLITTING
    assert statuses[-2:] == [ConversionStatus.STITCHING, ConversionStatus.COMPLETE]
    assert [percent for status, percent in history if status is ConversionStatus.PROCESSING][1:] == [33, 67, 100]


def test_empty_text_fails_before_processing():
    engine = ScriptedEngine()
    history = []

    with pytest.raises(ConversionFailed) as excinfo:
        _converter(engine, history=history).convert("   ", VOICE)

    assert excinfo.value.code is ErrorCode.TEXT_EMPTY
    assert excinfo.value.retryable is False
    assert [status for status, _ in history] == [ConversionStatus.SPLITTING, ConversionStatus.FAILED]
    assert not engine.calls


def test_invalid_voice_is_rejected_up_front():
    engine = ScriptedEngine()

    with pytest.raises(ValidationError) as excinfo:
        _converter(engine).convert(FIVE_SENTENCES, "invalid-voice")

    assert excinfo.value.code is ErrorCode.INVALID_VOICE
    assert not engine.calls


def test_oversized_sentence_fails_validation_without_provider_call():
    text = "Short start. " + "a" * 4001
    engine = ScriptedEngine()
    job = ConversionJob(text=text, voice_id=VOICE)

    with pytest.raises(ConversionFailed):
        _converter(engine, max_chars=4000).run(job)

    assert job.failed_orders == [1]
    assert job.failures[1].code is ErrorCode.TEXT_TOO_LONG
    assert list(engine.calls) == ["Short start."]


def test_decode_failure_while_stitching_fails_the_job():
    engine = ScriptedEngine(audio_format="wav")
    converter = SpeechConverter(
        engine,
        ConversionConfig(max_chars=15),
        stitcher=AudioStitcher(StitchStrategy.TRANSCODE, output_format="wav"),
        sleeper=lambda _: None,
    )
    job = ConversionJob(text=FIVE_SENTENCES, voice_id=VOICE)

    with pytest.raises(DecodeError) as excinfo:
        converter.run(job)

    assert excinfo.value.order == 0
    assert job.status is ConversionStatus.FAILED


def test_job_refuses_to_resolve_an_order_twice():
    job = ConversionJob(text="x", voice_id=VOICE)
    fragment = AudioFragment(order=0, audio_bytes=b"a")
    job.record_success(fragment)

    with pytest.raises(ValueError):
        job.record_success(fragment)


def test_config_validation():
    with pytest.raises(ValueError):
        ConversionConfig(max_retries=0).validate()
    with pytest.raises(ValueError):
        ConversionConfig(max_chars=-1).validate()


def test_stitch_error_moves_job_to_failed():
    engine = ScriptedEngine(audio_format="wav")
    history = []
    job = ConversionJob(text="Alpha one. Bravo two.", voice_id=VOICE)

    with pytest.raises(ValueError):
        _converter(engine, history=history).run(job)

    assert job.status is ConversionStatus.FAILED
    assert [status for status, _ in history][-2:] == [ConversionStatus.STITCHING, ConversionStatus.FAILED]


def test_config_rejects_segments_longer_than_a_request():
    ConversionConfig(max_chars=4000).validate()
    with pytest.raises(ValueError):
        ConversionConfig(max_chars=4001).validate()
    with pytest.raises(ValueError):
        SpeechConverter(ScriptedEngine(), ConversionConfig(max_chars=8000))
