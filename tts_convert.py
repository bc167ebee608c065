#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from speech_pipeline.converter import ConversionConfig, ConversionJob, ConversionStatus, SpeechConverter
from speech_pipeline.errors import ConversionFailed, SpeechPipelineError
from speech_pipeline.merger import AudioStitcher, StitchStrategy
from speech_pipeline.metadata import MetadataBuilder
from speech_pipeline.split_text import estimate_chunk_count
from speech_pipeline.storage import DEFAULT_MAX_BYTES, AudioStore
from speech_pipeline.tts_engine import (
    GoogleCloudTtsEngine,
    HttpTtsEngine,
    MockTtsEngine,
    TtsEngine,
    tts_configured,
)

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert long text into one speech audio file.")
    parser.add_argument("--input", help="Input text file path.")
    parser.add_argument("--input-encoding", default="utf-8", help="Encoding used for input file.")
    parser.add_argument("--voice-id", default="en-US-Wavenet-D", help="Voice identifier, e.g. en-US-Neural2-A.")
    parser.add_argument("--engine", default="google", help="TTS engine to use (google, http, mock).")
    parser.add_argument("--api-key", help="Google Cloud TTS API key (defaults to GOOGLE_CLOUD_TTS_API_KEY).")
    parser.add_argument("--service-url", help="Base URL of the TTS passthrough service (defaults to TTS_SERVICE_URL).")
    parser.add_argument("--max-chars", type=int, default=4000, help="Maximum characters per synthesis request.")
    parser.add_argument("--max-retries", type=int, default=3, help="Maximum attempts per segment for transient errors.")
    parser.add_argument("--retry-initial-delay", type=float, default=1.0, help="Initial retry delay in seconds.")
    parser.add_argument("--retry-backoff", type=float, default=2.0, help="Multiplier for retry backoff.")
    parser.add_argument("--rate-limit-delay", type=float, default=5.0, help="Wait after a rate limit when the provider gives no delay.")
    parser.add_argument("--strategy", default="transcode", choices=[s.value for s in StitchStrategy], help="How fragments are stitched.")
    parser.add_argument("--sample-rate", type=int, default=44100, help="Sample rate of the stitched output.")
    parser.add_argument("--channels", type=int, default=1, help="Channel count of the stitched output.")
    parser.add_argument("--bitrate", default="128k", help="Bitrate used when re-encoding.")
    parser.add_argument("--output", default="./output/speech.mp3", help="Path for the stitched audio.")
    parser.add_argument("--metadata-output", default="./output/metadata.json", help="Path for metadata JSON output.")
    parser.add_argument("--store-path", default="./output/store.json", help="Path of the local audio store.")
    parser.add_argument("--store-max-bytes", type=int, default=DEFAULT_MAX_BYTES, help="Byte budget of the audio store.")
    parser.add_argument("--no-store", action="store_true", help="Do not keep the result in the audio store.")
    parser.add_argument("--estimate", action="store_true", help="Only print the estimated number of requests.")
    parser.add_argument("--list-stored", action="store_true", help="List stored conversions and exit.")
    parser.add_argument("--health", action="store_true", help="Report whether a TTS provider is configured and exit.")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def load_input_text(path: Path, encoding: str) -> str:
    if not path.exists():
        raise FileNotFoundError(f"Input file does not exist: {path}")
    return path.read_text(encoding=encoding)


def create_engine(args: argparse.Namespace) -> TtsEngine:
    engine_name = (args.engine or "").lower()
    if engine_name in {"mock", "dummy"}:
        return MockTtsEngine()

    if engine_name in {"http", "service"}:
        base_url = args.service_url or os.environ.get("TTS_SERVICE_URL")
        if not base_url:
            raise ValueError("HTTP engine requires --service-url or the TTS_SERVICE_URL env var.")
        return HttpTtsEngine(base_url)

    if engine_name in {"google", "google_cloud", "gcp"}:
        return GoogleCloudTtsEngine(
            api_key=args.api_key or os.environ.get("GOOGLE_CLOUD_TTS_API_KEY"),
            service_account_json=os.environ.get("GOOGLE_CLOUD_SERVICE_ACCOUNT"),
            sample_rate=args.sample_rate,
        )

    raise ValueError(f"Unsupported engine: {args.engine}")


def create_stitcher(args: argparse.Namespace, output_path: Path, engine: TtsEngine) -> AudioStitcher:
    output_format = output_path.suffix.lstrip(".").lower() or "mp3"
    return AudioStitcher(
        StitchStrategy(args.strategy),
        input_format=engine.audio_format,
        output_format=output_format,
        frame_rate=args.sample_rate,
        channels=args.channels,
        bitrate=args.bitrate,
    )


def report_progress(job: ConversionJob) -> None:
    if job.status is ConversionStatus.PROCESSING and job.resolved_count:
        logger.info(
            "Progress %d%% (%d/%d segments).",
            job.progress_percent,
            job.resolved_count,
            job.total_segments,
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.debug)

    if args.health:
        print(json.dumps({"status": "ok", "ttsConfigured": tts_configured()}))
        return 0

    store = None if args.no_store else AudioStore(Path(args.store_path), max_bytes=args.store_max_bytes)
    if args.list_stored:
        for summary in store.list() if store else []:
            print(json.dumps(summary, ensure_ascii=False))
        return 0

    if not args.input:
        raise ValueError("--input is required.")
    input_path = Path(args.input)
    text = load_input_text(input_path, args.input_encoding)

    if args.estimate:
        print(estimate_chunk_count(text, args.max_chars))
        return 0

    engine = create_engine(args)
    config = ConversionConfig(
        max_chars=args.max_chars,
        max_retries=args.max_retries,
        initial_retry_delay=args.retry_initial_delay,
        retry_backoff_factor=args.retry_backoff,
        rate_limit_delay=args.rate_limit_delay,
    )
    output_path = Path(args.output)
    converter = SpeechConverter(
        engine,
        config,
        stitcher=create_stitcher(args, output_path, engine),
        progress_callback=report_progress,
    )
    metadata_builder = MetadataBuilder(
        engine=engine,
        config=config,
        output_path=Path(args.metadata_output),
    )
    options = {"input_path": input_path, "strategy": args.strategy}

    job = ConversionJob(text=text, voice_id=args.voice_id)
    try:
        converter.run(job)
    except ConversionFailed as exc:
        logger.error("%s (failed segments: %s)", exc, exc.failed_orders or "-")
        if job.segments:
            metadata_builder.write_metadata(
                metadata_builder.build_metadata(job=job, artifact=None, final_output=None, options=options)
            )
        return 1

    artifact = job.artifact
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(artifact.audio_bytes)

    metadata = metadata_builder.build_metadata(
        job=job, artifact=artifact, final_output=output_path, options=options
    )
    metadata_builder.write_metadata(metadata)
    logger.info("Metadata written to %s", metadata_builder.output_path)

    if store is not None:
        record = metadata_builder.build_record(job, artifact, now=time.time())
        if store.put(record):
            logger.info("Stored conversion %s (%d%% of store used).", record.id, store.usage_percent())

    logger.info("Synthesis complete. Final audio saved to %s", output_path)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.error("Interrupted by user.")
        sys.exit(1)
    except SpeechPipelineError as exc:
        logger.error("%s [%s]", exc, exc.code.value)
        sys.exit(1)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        sys.exit(1)
