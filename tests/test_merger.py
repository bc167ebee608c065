import io

import numpy as np
import pytest
from pydub import AudioSegment
from pydub.generators import Sine

from speech_pipeline.errors import DecodeError, EmptyInput
from speech_pipeline.merger import (
    AudioFragment,
    AudioStitcher,
    StitchStrategy,
    float_to_int16,
    merge_audio_fragments,
)


def _tone(duration_ms, *, freq=440, frame_rate=22050):
    return Sine(freq, sample_rate=frame_rate).to_audio_segment(duration=duration_ms, volume=-6.0)


def _wav_fragment(order, segment, *, estimate=None):
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return AudioFragment(
        order=order,
        audio_bytes=buffer.getvalue(),
        source_text=f"sentence-{order}",
        duration_seconds=estimate if estimate is not None else len(segment) / 1000,
        audio_format="wav",
    )


def _samples(segment):
    return np.array(segment.get_array_of_samples(), dtype=np.int32)


def _wav_stitcher(frame_rate=22050):
    return AudioStitcher(StitchStrategy.TRANSCODE, output_format="wav", frame_rate=frame_rate)


def test_stitch_rejects_empty_input():
    with pytest.raises(EmptyInput):
        _wav_stitcher().stitch([])


def test_single_fragment_is_passed_through_unchanged():
    fragment = AudioFragment(order=0, audio_bytes=b"\xff\xfbnot decoded", duration_seconds=1.2, audio_format="mp3")

    artifact = _wav_stitcher().stitch([fragment])

    assert artifact.audio_bytes == fragment.audio_bytes
    assert artifact.audio_format == "mp3"
    assert artifact.total_duration_seconds == 1.2
    assert artifact.measured_duration_seconds is None


def test_stitch_result_does_not_depend_on_arrival_order():
    first = _wav_fragment(0, _tone(200, freq=880))
    second = _wav_fragment(1, _tone(300, freq=440))

    stitcher = _wav_stitcher()
    assert stitcher.stitch([second, first]).audio_bytes == stitcher.stitch([first, second]).audio_bytes


def test_transcode_joins_samples_in_order_without_gaps():
    first_segment = _tone(200, freq=880)
    second_segment = _tone(300, freq=440)
    fragments = [_wav_fragment(1, second_segment), _wav_fragment(0, first_segment)]

    artifact = _wav_stitcher().stitch(fragments)
    merged = AudioSegment.from_file(io.BytesIO(artifact.audio_bytes), format="wav")
    merged_samples = _samples(merged)
    first_samples = _samples(first_segment)
    second_samples = _samples(second_segment)

    assert artifact.audio_format == "wav"
    assert artifact.fragment_count == 2
    assert len(merged_samples) == len(first_samples) + len(second_samples)
    # The float round trip may shift a sample by one step at most.
    assert np.max(np.abs(merged_samples[: len(first_samples)] - first_samples)) <= 1
    assert np.max(np.abs(merged_samples[len(first_samples) :] - second_samples)) <= 1


def test_transcode_resamples_to_common_rate():
    fragments = [
        _wav_fragment(0, _tone(250, frame_rate=16000)),
        _wav_fragment(1, _tone(250, frame_rate=22050)),
    ]

    artifact = _wav_stitcher(frame_rate=22050).stitch(fragments)
    merged = AudioSegment.from_file(io.BytesIO(artifact.audio_bytes), format="wav")

    assert merged.frame_rate == 22050
    assert merged.channels == 1
    assert artifact.measured_duration_seconds == pytest.approx(0.5, abs=0.01)


def test_total_duration_is_the_sum_of_estimates():
    fragments = [
        _wav_fragment(0, _tone(100), estimate=1.5),
        _wav_fragment(1, _tone(100), estimate=2.25),
        _wav_fragment(2, _tone(100), estimate=0.75),
    ]

    artifact = _wav_stitcher().stitch(fragments)

    assert artifact.total_duration_seconds == pytest.approx(4.5)
    assert artifact.measured_duration_seconds == pytest.approx(0.3, abs=0.01)


def test_undecodable_fragment_fails_whole_stitch():
    fragments = [
        _wav_fragment(0, _tone(100)),
        AudioFragment(order=1, audio_bytes=b"garbage bytes", audio_format="wav"),
        _wav_fragment(2, _tone(100)),
    ]

    with pytest.raises(DecodeError) as excinfo:
        _wav_stitcher().stitch(fragments)

    assert excinfo.value.order == 1


def test_duplicate_orders_are_rejected():
    fragments = [_wav_fragment(0, _tone(100)), _wav_fragment(0, _tone(100))]
    with pytest.raises(ValueError):
        _wav_stitcher().stitch(fragments)


def test_concat_strategy_joins_mp3_bytes_in_order():
    fragments = [
        AudioFragment(order=1, audio_bytes=b"BBBB", duration_seconds=2.0, audio_format="mp3"),
        AudioFragment(order=0, audio_bytes=b"AAAA", duration_seconds=1.0, audio_format="mp3"),
    ]

    artifact = merge_audio_fragments(fragments, strategy=StitchStrategy.CONCAT)

    assert artifact.audio_bytes == b"AAAABBBB"
    assert artifact.audio_format == "mp3"
    assert artifact.total_duration_seconds == 3.0


def test_concat_strategy_refuses_container_formats():
    with pytest.raises(ValueError):
        AudioStitcher(StitchStrategy.CONCAT, input_format="wav")

    fragments = [_wav_fragment(0, _tone(100)), _wav_fragment(1, _tone(100))]
    with pytest.raises(ValueError):
        AudioStitcher(StitchStrategy.CONCAT).stitch(fragments)


def test_float_to_int16_uses_asymmetric_scaling():
    samples = np.array([1.0, -1.0, 0.5, -0.5, 2.0, -2.0, 0.0, 0.25])

    converted = float_to_int16(samples)

    assert converted.dtype == np.int16
    assert converted.tolist() == [32767, -32768, 16384, -16384, 32767, -32768, 0, 8192]
