from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence, TypeAlias

from openai import AsyncOpenAI

from src.adapters.ffmpeg import FfprobeDurationProbe
from src.adapters.openai_transcription import DEFAULT_TRANSCRIPTION_MODEL, OpenAITranscriptionAdapter
from src.adapters.staging import LocalStagingDestination, StagingDestination, TusStagingDestination
from src.components.progress import EventChannel
from src.contracts.errors import JobCancelledError, PipelineError
from src.contracts.events import ErrorPayload, ProgressEvent, ProgressPayload, SegmentCompletePayload
from src.pipeline.io import build_pipeline_paths
from src.pipeline.transcription_pipeline import JobConfig, run_job
from src.utils.logging import setup_logging
from src.utils.retry import RetryPolicy


logger = logging.getLogger(__name__)

Argv: TypeAlias = Sequence[str]

_MIB = 1024 * 1024
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass(frozen=True, slots=True)
class CliRunResult:
    manifest_path: Path
    output_dir: Path
    transcript_path: Path
    word_count: int


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: {value}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return parsed


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number: {value}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return parsed


def _nonnegative_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number: {value}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transcribe a long recording in overlapping segments.")
    parser.add_argument("--input", dest="input_path", type=Path, required=True, help="Input audio file path.")
    parser.add_argument("--output-dir", type=Path, required=True, help="Run directory for manifest and transcript.")
    parser.add_argument("--model", default=DEFAULT_TRANSCRIPTION_MODEL, help="OpenAI transcription model.")
    parser.add_argument("--language", default=None, help="Transcription language code (e.g. en).")
    parser.add_argument("--prompt", default=None, help="Optional provider prompt for every segment.")
    parser.add_argument("--api-key", default=None, help="OpenAI API key (defaults to OPENAI_API_KEY).")
    parser.add_argument("--segment-seconds", type=_positive_float, default=900.0, help="Target segment length.")
    parser.add_argument("--overlap-seconds", type=_nonnegative_float, default=2.0, help="Overlap between segments.")
    parser.add_argument("--max-concurrent", type=_positive_int, default=3, help="Segments transcribed at once.")
    parser.add_argument("--max-attempts", type=_positive_int, default=3, help="Attempts per segment call.")
    parser.add_argument(
        "--admission-delay-seconds",
        type=_nonnegative_float,
        default=1.0,
        help="Pause between segment admissions.",
    )
    parser.add_argument("--chunk-size-mb", type=_positive_int, default=5, help="Resumable upload chunk size.")
    parser.add_argument(
        "--resumable-threshold-mb",
        type=_positive_int,
        default=50,
        help="Files above this size upload in resumable chunks.",
    )
    parser.add_argument("--max-request-mb", type=_positive_int, default=25, help="Single-request size ceiling.")
    parser.add_argument("--max-file-mb", type=_positive_int, default=500, help="Largest accepted input file.")
    parser.add_argument("--duration-seconds", type=_positive_float, default=None, help="Known recording duration.")
    parser.add_argument("--no-probe", action="store_true", help="Skip ffprobe; estimate duration from bitrate.")
    staging = parser.add_mutually_exclusive_group()
    staging.add_argument("--staging-dir", type=Path, default=None, help="Stage the recording in a local directory.")
    staging.add_argument("--staging-url", default=None, help="Stage the recording on a tus 1.0 server.")
    parser.add_argument(
        "--staging-header",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra HTTP header for the tus server (repeatable).",
    )
    parser.add_argument("--speaker-mode", choices=["single", "alternate"], default="single", help="Speaker labels.")
    parser.add_argument("--strict-stitching", action="store_true", help="Fail on malformed fragments.")
    parser.add_argument("--run-id", default=None, help="Optional deterministic run identifier.")
    parser.add_argument("--resume", action="store_true", help="Continue a previous run in --output-dir.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument("--log-format", choices=["text", "json"], default="text", help="Log output format.")
    parser.add_argument(
        "--include-error-traceback",
        action="store_true",
        help="Persist traceback details in manifest step errors.",
    )
    return parser


def parse_args(argv: Argv | None = None) -> argparse.Namespace:
    return build_parser().parse_args(list(argv) if argv is not None else None)


def _header_dict(entries: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected KEY=VALUE header, got {entry!r}")
        headers[key.strip()] = value
    return headers


def build_job_config(
    args: argparse.Namespace,
    *,
    transcription_provider: Any,
    staging: StagingDestination | None = None,
    duration_probe: Any = None,
) -> JobConfig:
    return JobConfig(
        output_dir=Path(args.output_dir),
        transcription_provider=transcription_provider,
        staging=staging,
        duration_probe=duration_probe,
        total_duration_s=args.duration_seconds,
        segment_duration_s=float(args.segment_seconds),
        overlap_s=float(args.overlap_seconds),
        max_concurrent_segments=int(args.max_concurrent),
        chunk_size_bytes=int(args.chunk_size_mb) * _MIB,
        resumable_threshold_bytes=int(args.resumable_threshold_mb) * _MIB,
        max_request_bytes=int(args.max_request_mb) * _MIB,
        max_file_bytes=int(args.max_file_mb) * _MIB,
        retry_policy=RetryPolicy(max_attempts=int(args.max_attempts)),
        admission_delay_s=float(args.admission_delay_seconds),
        speaker_mode=args.speaker_mode,
        strict_stitching=bool(args.strict_stitching),
        run_id=args.run_id,
        resume=bool(args.resume),
        include_error_traceback=bool(args.include_error_traceback),
    )


def format_event(event: ProgressEvent) -> str | None:
    payload = event.payload
    if isinstance(payload, ProgressPayload):
        return f"[{payload.percentage:5.1f}%] {payload.stage}: {payload.message}"
    if isinstance(payload, SegmentCompletePayload):
        return f"segment {payload.segment_index + 1}/{payload.total_segments} done ({len(payload.lines)} lines released)"
    if isinstance(payload, ErrorPayload):
        return f"error [{payload.category}]: {payload.message}"
    if event.kind == "cancelled":
        return "cancelled"
    if event.kind == "complete":
        return "[100.0%] complete"
    return None


def _duration_probe(args: argparse.Namespace) -> FfprobeDurationProbe | None:
    if args.no_probe or args.duration_seconds is not None:
        return None
    if not FfprobeDurationProbe.available():
        logger.warning("ffprobe not found; the recording duration will be estimated from its bitrate")
        return None
    return FfprobeDurationProbe()


def build_openai_client(args: argparse.Namespace) -> AsyncOpenAI:
    # Retries and call timeouts belong to the scheduler, one HTTP call per attempt.
    return AsyncOpenAI(api_key=args.api_key or None, max_retries=0, timeout=None)


async def _print_events(channel: EventChannel) -> None:
    async for event in channel:
        line = format_event(event)
        if line is not None:
            print(line, file=sys.stderr)


async def run_from_args(args: argparse.Namespace) -> CliRunResult:
    async with AsyncExitStack() as stack:
        client = build_openai_client(args)
        stack.push_async_callback(client.close)
        provider = OpenAITranscriptionAdapter(client, model=args.model, language=args.language, prompt=args.prompt)

        staging: StagingDestination | None = None
        if args.staging_dir is not None:
            staging = LocalStagingDestination(Path(args.staging_dir))
        elif args.staging_url:
            staging = await stack.enter_async_context(
                TusStagingDestination(args.staging_url, headers=_header_dict(args.staging_header))
            )

        config = build_job_config(
            args,
            transcription_provider=provider,
            staging=staging,
            duration_probe=_duration_probe(args),
        )
        channel = EventChannel()
        printer = asyncio.create_task(_print_events(channel))
        try:
            run = await run_job(Path(args.input_path), config, events=channel)
        finally:
            await printer

    paths = build_pipeline_paths(Path(args.output_dir))
    return CliRunResult(
        manifest_path=paths.manifest_path,
        output_dir=paths.run_dir,
        transcript_path=paths.transcript_path,
        word_count=run.document.word_count,
    )


def main(argv: Argv | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, json_format=args.log_format == "json")
    try:
        result = asyncio.run(run_from_args(args))
    except (JobCancelledError, KeyboardInterrupt):
        print("cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    except PipelineError as exc:
        print(f"error [{exc.category}]: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED

    print(f"manifest_path={result.manifest_path}")
    print(f"transcript_path={result.transcript_path}")
    print(f"word_count={result.word_count}")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
