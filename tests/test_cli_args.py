from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from src.adapters.openai_transcription import OpenAITranscriptionAdapter
from src.adapters.staging import LocalStagingDestination
from src.cli import run_transcribe as cli
from src.contracts.artifacts import SegmentResult
from src.contracts.errors import JobCancelledError, PipelineError
from src.contracts.events import ErrorPayload, ProgressEvent, ProgressPayload, SegmentCompletePayload
from src.pipeline.transcription_pipeline import JobConfig


def test_parse_args_maps_cli_flags() -> None:
    args = cli.parse_args(
        [
            "--input",
            "talk.mp3",
            "--output-dir",
            "outputs",
            "--model",
            "whisper-1",
            "--language",
            "en",
            "--segment-seconds",
            "600",
            "--overlap-seconds",
            "3",
            "--max-concurrent",
            "4",
            "--staging-url",
            "https://uploads.example.com/files/",
            "--staging-header",
            "Authorization=Bearer abc",
            "--speaker-mode",
            "alternate",
            "--resume",
            "--include-error-traceback",
        ]
    )

    assert args.input_path == Path("talk.mp3")
    assert args.output_dir == Path("outputs")
    assert args.model == "whisper-1"
    assert args.language == "en"
    assert args.segment_seconds == 600.0
    assert args.overlap_seconds == 3.0
    assert args.max_concurrent == 4
    assert args.staging_url == "https://uploads.example.com/files/"
    assert args.staging_header == ["Authorization=Bearer abc"]
    assert args.speaker_mode == "alternate"
    assert args.resume is True
    assert args.include_error_traceback is True
    assert args.log_format == "text"


@pytest.mark.parametrize(
    "flags",
    [
        ["--max-concurrent", "0"],
        ["--segment-seconds", "-5"],
        ["--overlap-seconds", "abc"],
        ["--staging-dir", "stage", "--staging-url", "https://example.com"],
    ],
)
def test_parse_args_rejects_invalid_values(flags: list[str]) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["--input", "talk.mp3", "--output-dir", "outputs", *flags])


def test_build_job_config_maps_fields() -> None:
    args = cli.parse_args(
        [
            "--input",
            "talk.mp3",
            "--output-dir",
            "outputs",
            "--chunk-size-mb",
            "8",
            "--resumable-threshold-mb",
            "20",
            "--max-request-mb",
            "24",
            "--max-attempts",
            "5",
            "--duration-seconds",
            "2400",
            "--run-id",
            "run_123",
        ]
    )
    provider = object()
    staging = LocalStagingDestination(Path("stage"))

    config = cli.build_job_config(args, transcription_provider=provider, staging=staging)

    assert isinstance(config, JobConfig)
    assert config.output_dir == Path("outputs")
    assert config.transcription_provider is provider
    assert config.staging is staging
    assert config.chunk_size_bytes == 8 * 1024 * 1024
    assert config.resumable_threshold_bytes == 20 * 1024 * 1024
    assert config.max_request_bytes == 24 * 1024 * 1024
    assert config.retry_policy.max_attempts == 5
    assert config.total_duration_s == 2400.0
    assert config.segment_duration_s == 900.0
    assert config.overlap_s == 2.0
    assert config.run_id == "run_123"
    assert config.resume is False


def test_staging_header_must_be_key_value() -> None:
    assert cli._header_dict(["X-Token=a=b"]) == {"X-Token": "a=b"}
    with pytest.raises(ValueError):
        cli._header_dict(["missing-separator"])


def test_format_event() -> None:
    progress = ProgressEvent(kind="progress", sequence=1, payload=ProgressPayload(percentage=42.5, stage="transcribe", message="Completed 1 of 2 segments"))
    segment = ProgressEvent(
        kind="segment-complete",
        sequence=2,
        payload=SegmentCompletePayload(
            segment_index=0,
            total_segments=2,
            result=SegmentResult(segment_index=0, raw_text="", fragments=[]),
        ),
    )
    error = ProgressEvent(kind="error", sequence=3, payload=ErrorPayload(category="quota", message="slow down", error_type="RateLimitedError"))

    assert cli.format_event(progress) == "[ 42.5%] transcribe: Completed 1 of 2 segments"
    assert cli.format_event(segment) == "segment 1/2 done (0 lines released)"
    assert cli.format_event(error) == "error [quota]: slow down"


def test_openai_client_leaves_retries_and_timeouts_to_the_scheduler() -> None:
    args = cli.parse_args(["--input", "talk.mp3", "--output-dir", "outputs", "--api-key", "sk-test"])

    client = cli.build_openai_client(args)

    assert client.api_key == "sk-test"
    assert client.max_retries == 0
    assert client.timeout is None


def test_run_from_args_wires_provider_and_staging(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}

    async def fake_run_job(input_path, config, *, events=None, cancel_event=None):  # type: ignore[no-untyped-def]
        captured["input_path"] = input_path
        captured["config"] = config
        events.close()
        return SimpleNamespace(document=SimpleNamespace(word_count=7))

    monkeypatch.setattr(cli, "run_job", fake_run_job)
    args = cli.parse_args(
        [
            "--input",
            "talk.mp3",
            "--output-dir",
            str(tmp_path / "outputs"),
            "--api-key",
            "sk-test",
            "--language",
            "de",
            "--staging-dir",
            str(tmp_path / "stage"),
            "--no-probe",
        ]
    )

    result = asyncio.run(cli.run_from_args(args))

    config = captured["config"]
    assert captured["input_path"] == Path("talk.mp3")
    assert isinstance(config.transcription_provider, OpenAITranscriptionAdapter)
    assert isinstance(config.staging, LocalStagingDestination)
    assert config.duration_probe is None
    assert result.manifest_path == tmp_path / "outputs" / "manifest.json"
    assert result.transcript_path == tmp_path / "outputs" / "transcript.txt"
    assert result.word_count == 7


def test_main_success_prints_paths_and_returns_zero(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    async def fake_run_from_args(args):  # type: ignore[no-untyped-def]
        return cli.CliRunResult(
            manifest_path=Path("outputs/manifest.json"),
            output_dir=Path("outputs"),
            transcript_path=Path("outputs/transcript.txt"),
            word_count=12,
        )

    monkeypatch.setattr(cli, "run_from_args", fake_run_from_args)

    exit_code = cli.main(["--input", "talk.mp3", "--output-dir", "outputs"])
    out = capsys.readouterr()

    assert exit_code == 0
    assert out.out.splitlines() == [
        f"manifest_path={Path('outputs') / 'manifest.json'}",
        f"transcript_path={Path('outputs') / 'transcript.txt'}",
        "word_count=12",
    ]


@pytest.mark.parametrize(
    ("error", "expected_code", "expected_err"),
    [
        (PipelineError("pipeline failed", category="credentials", step="transcribe"), 1, "error [credentials]: pipeline failed"),
        (JobCancelledError("job cancelled"), 130, "cancelled"),
        (RuntimeError("boom"), 1, "error: boom"),
    ],
)
def test_main_failure_exit_codes(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    error: BaseException,
    expected_code: int,
    expected_err: str,
) -> None:
    async def raise_error(args):  # type: ignore[no-untyped-def]
        raise error

    monkeypatch.setattr(cli, "run_from_args", raise_error)

    exit_code = cli.main(["--input", "talk.mp3", "--output-dir", "outputs"])
    out = capsys.readouterr()

    assert exit_code == expected_code
    assert out.out == ""
    assert expected_err in out.err
