from __future__ import annotations

import asyncio
import logging
import traceback as tb
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

from src.adapters.ffmpeg import DurationProbe
from src.adapters.staging import FileRangeReader, SegmentAudioReader, StagedObjectReader, StagingDestination
from src.adapters.transcription import TranscriptionProvider
from src.components.planning import (
    DEFAULT_MAX_REQUEST_BYTES,
    DEFAULT_OVERLAP_S,
    DEFAULT_SEGMENT_DURATION_S,
    estimate_duration_s,
    plan_hash,
    plan_segments,
    validate_plan,
)
from src.components.progress import EventChannel, ProgressAggregator
from src.components.scheduler import DEFAULT_ADMISSION_DELAY_S, DEFAULT_MAX_CONCURRENT_SEGMENTS, TranscriptionScheduler
from src.components.stitching import (
    DEFAULT_OVERLAP_TOLERANCE_S,
    DEFAULT_SPEAKER_SWITCH_GAP_S,
    IncrementalStitcher,
    SpeakerMode,
)
from src.components.transport import (
    DEFAULT_CHUNK_SIZE_BYTES,
    DEFAULT_RESUMABLE_THRESHOLD_BYTES,
    DEFAULT_RETRY_DELAYS_S,
    ChunkTransport,
    needs_resumable_upload,
)
from src.components.validation import DEFAULT_MAX_DURATION_S, DEFAULT_MAX_FILE_BYTES, accept_source
from src.contracts.artifacts import AudioSource, SegmentDescriptor, SegmentResult, TranscriptDocument, UploadSession
from src.contracts.errors import (
    FfmpegError,
    InputValidationError,
    JobCancelledError,
    PipelineError,
    PlanningError,
    UploadSessionExpiredError,
    error_category,
)
from src.contracts.events import ProgressEvent
from src.contracts.manifest import Manifest, StepRecord
from src.pipeline.io import (
    PipelinePaths,
    build_pipeline_paths,
    load_manifest,
    manifest_path_ref,
    persist_manifest,
    read_json_file,
    resolve_path_ref,
    write_json_file,
    write_text_file,
)
from src.utils.hashing import sha256_file
from src.utils.retry import RetryPolicy


logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class JobConfig:
    output_dir: Path
    transcription_provider: TranscriptionProvider
    staging: StagingDestination | None = None
    duration_probe: DurationProbe | None = None
    total_duration_s: float | None = None
    segment_duration_s: float = DEFAULT_SEGMENT_DURATION_S
    overlap_s: float = DEFAULT_OVERLAP_S
    max_concurrent_segments: int = DEFAULT_MAX_CONCURRENT_SEGMENTS
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES
    resumable_threshold_bytes: int = DEFAULT_RESUMABLE_THRESHOLD_BYTES
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    upload_retry_delays_s: tuple[float, ...] = DEFAULT_RETRY_DELAYS_S
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    admission_delay_s: float = DEFAULT_ADMISSION_DELAY_S
    call_timeout_s: float | None = None
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    max_duration_s: float | None = DEFAULT_MAX_DURATION_S
    overlap_tolerance_s: float = DEFAULT_OVERLAP_TOLERANCE_S
    speaker_mode: SpeakerMode = "single"
    speaker_switch_gap_s: float = DEFAULT_SPEAKER_SWITCH_GAP_S
    strict_stitching: bool = False
    run_id: str | None = None
    resume: bool = False
    include_error_traceback: bool = False
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        positive = {
            "segment_duration_s": self.segment_duration_s,
            "max_concurrent_segments": self.max_concurrent_segments,
            "chunk_size_bytes": self.chunk_size_bytes,
            "max_request_bytes": self.max_request_bytes,
            "max_file_bytes": self.max_file_bytes,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.overlap_s < 0:
            raise ValueError("overlap_s must be >= 0")
        if self.resumable_threshold_bytes < 0:
            raise ValueError("resumable_threshold_bytes must be >= 0")
        if self.admission_delay_s < 0:
            raise ValueError("admission_delay_s must be >= 0")
        if self.call_timeout_s is not None and self.call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be > 0")
        if self.total_duration_s is not None and self.total_duration_s <= 0:
            raise ValueError("total_duration_s must be > 0")
        if self.speaker_mode not in ("single", "alternate"):
            raise ValueError(f"unsupported speaker_mode: {self.speaker_mode}")


@dataclass(frozen=True, slots=True)
class TranscriptionRun:
    manifest: Manifest
    document: TranscriptDocument
    paths: PipelinePaths


def _resolve_duration(source: AudioSource, config: JobConfig) -> tuple[float, str]:
    if config.total_duration_s is not None:
        return config.total_duration_s, "config"
    if config.duration_probe is not None:
        try:
            return config.duration_probe.probe(source.path), "probe"
        except FfmpegError as exc:
            logger.warning("Duration probe failed for %s (%s); estimating from bitrate", source.filename, exc)
    return estimate_duration_s(source.byte_size, source.mime_hint), "estimate"


def _object_name(source: AudioSource) -> str:
    return f"{source.sha256[:16]}/{source.filename}"


async def run_job(
    input_path: Path,
    config: JobConfig,
    *,
    events: EventChannel | None = None,
    cancel_event: asyncio.Event | None = None,
) -> TranscriptionRun:
    """
    Run one transcription job: validate, upload, plan, transcribe, stitch, write outputs.

    The manifest in ``config.output_dir`` is persisted after every step,
    every acknowledged upload chunk and every completed segment. With
    ``config.resume`` a previous manifest for the same input is picked up:
    finished uploads are not repeated, interrupted uploads continue from the
    destination's offset and segment results of an identical plan are reused.
    """
    input_path = Path(input_path)
    paths = build_pipeline_paths(config.output_dir)
    progress = ProgressAggregator(events)
    manifest = Manifest(run_id=config.run_id or uuid4().hex)

    def fail_step(step: StepRecord, exc: Exception, *, step_context: dict[str, Any] | None = None) -> None:
        if isinstance(exc, JobCancelledError):
            step.finish(status="cancelled", meta={"context": _json_safe(step_context or {})})
            manifest.warnings.append(f"{step.name}: cancelled")
            persist_manifest(manifest, paths.manifest_path)
            logger.warning("Job %s cancelled during %s", manifest.run_id, step.name)
            progress.cancel(str(exc) or "Job cancelled", step=step.name)
            raise exc

        category = error_category(exc)
        segment_index = getattr(exc, "segment_index", None)
        error_context = {
            "step": step.name,
            "input_path": str(input_path),
            "run_dir": str(paths.run_dir),
            "step_context": _json_safe(step_context or {}),
        }
        error_payload: dict[str, Any] = {
            "type": type(exc).__name__,
            "message": str(exc),
            "category": category,
            "segment_index": segment_index,
            "context": error_context,
        }
        if config.include_error_traceback:
            error_payload["traceback"] = "".join(tb.format_exception(type(exc), exc, exc.__traceback__))

        step.finish(
            status="failed",
            error=error_payload,
            error_type=type(exc).__name__,
            meta={"context": _json_safe(step_context or {})},
        )
        manifest.errors.append(f"{step.name}: {type(exc).__name__}: {exc}")
        persist_manifest(manifest, paths.manifest_path)
        logger.error("Job %s failed at %s (%s): %s", manifest.run_id, step.name, category, exc)
        progress.fail(exc, step=step.name, segment_index=segment_index)

        if isinstance(exc, PipelineError):
            raise exc
        raise PipelineError(
            f"pipeline failed at step '{step.name}': {exc}",
            category=category,
            step=step.name,
            segment_index=segment_index,
        ) from exc

    def complete_step(step: StepRecord, *, step_context: dict[str, Any] | None = None, artifacts: dict[str, Any] | None = None) -> None:
        meta: dict[str, Any] = {}
        if step_context:
            meta["context"] = _json_safe(step_context)
        if artifacts:
            meta["artifacts"] = _json_safe(artifacts)
        step.finish(status="success", meta=meta or None)
        persist_manifest(manifest, paths.manifest_path)

    def skip_step(step: StepRecord, reason: str) -> None:
        step.finish(status="skipped", meta={"reason": reason})
        persist_manifest(manifest, paths.manifest_path)
        logger.info("Skipping %s: %s", step.name, reason)

    def start_step(name: str, *, step_context: dict[str, Any] | None = None) -> StepRecord:
        step = manifest.ensure_step(name)
        step.start()
        if step_context:
            step.meta["context"] = _json_safe(step_context)
        return step

    def check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError("job cancelled")

    source: AudioSource | None = None
    duration_s: float | None = None
    reader: SegmentAudioReader | None = None
    plan: list[SegmentDescriptor] = []
    reused: dict[int, SegmentResult] = {}
    stitcher: IncrementalStitcher | None = None
    document: TranscriptDocument | None = None

    try:
        # 1. validate
        if config.resume:
            previous = load_manifest(paths.manifest_path)
            if previous is not None:
                manifest = previous
                if config.run_id and manifest.run_id != config.run_id:
                    logger.warning("Resuming run %s although run_id %s was requested", manifest.run_id, config.run_id)
                logger.info("Resuming run %s from %s", manifest.run_id, paths.manifest_path)

        validate_context = {"output_dir": str(paths.run_dir), "resume": config.resume}
        step = start_step("validate", step_context=validate_context)
        progress.stage("validate", f"Validating {input_path.name}")
        try:
            check_cancelled()
            if paths.run_dir.exists() and not paths.run_dir.is_dir():
                raise InputValidationError(f"output_dir is not a directory: {paths.run_dir}")
            source = await asyncio.to_thread(
                accept_source,
                input_path,
                max_file_bytes=config.max_file_bytes,
                duration_s=config.total_duration_s,
                max_duration_s=config.max_duration_s,
            )
            duration_s, duration_source = await asyncio.to_thread(_resolve_duration, source, config)
            # Bitrate estimates are too rough to reject a recording on.
            if duration_source == "probe" and config.max_duration_s is not None and duration_s > config.max_duration_s:
                raise InputValidationError(
                    f"recording is {duration_s / 60:.0f} minutes, above the {config.max_duration_s / 60:.0f} minute limit",
                    category="format",
                )
            source = replace(source, total_duration_estimate_s=duration_s)

            if manifest.input_sha256 not in (None, source.sha256):
                logger.warning("Input changed since the previous run; starting %s afresh", manifest.run_id)
                manifest = Manifest(run_id=manifest.run_id)
                step = start_step("validate", step_context=validate_context)

            paths.run_dir.mkdir(parents=True, exist_ok=True)
            manifest.input_sha256 = source.sha256
            manifest.artifacts.input_path = str(input_path)
            manifest.artifacts.input_sha256 = source.sha256
            manifest.artifacts.input_mime = source.mime_hint
            manifest.artifacts.input_bytes = source.byte_size
            manifest.artifacts.duration_estimate_s = duration_s

            complete_step(
                step,
                step_context={**validate_context, "duration_source": duration_source},
                artifacts={
                    "input_path": manifest.artifacts.input_path,
                    "input_sha256": manifest.artifacts.input_sha256,
                    "input_mime": manifest.artifacts.input_mime,
                    "duration_estimate_s": duration_s,
                },
            )
        except Exception as exc:
            fail_step(step, exc, step_context=validate_context)
        if source is None or duration_s is None:
            raise PipelineError("validate step did not produce an audio source")

        # 2. upload
        upload_context = {
            "staging": type(config.staging).__name__ if config.staging is not None else None,
            "byte_size": source.byte_size,
            "resumable": needs_resumable_upload(source.byte_size, config.resumable_threshold_bytes),
        }
        staged_locator = manifest.staged_locator(source.sha256) if config.resume and config.staging is not None else None
        step = start_step("upload", step_context=upload_context)
        try:
            check_cancelled()
            if config.staging is None:
                reader = FileRangeReader(source.path)
                skip_step(step, "no staging store configured")
                progress.upload_finished("Reading segments from the local file")
            elif staged_locator is not None:
                reader = StagedObjectReader(config.staging, staged_locator)
                skip_step(step, "already staged by a previous run")
                progress.upload_finished("Recording already staged")
            else:
                locator = await _stage_source(source, config, manifest, paths, progress, cancel_event)
                manifest.artifacts.staged_object_name = locator
                reader = StagedObjectReader(config.staging, locator)
                progress.upload_finished(f"Staged {source.byte_size} bytes")
                complete_step(step, step_context=upload_context, artifacts={"staged_object_name": locator})
        except Exception as exc:
            fail_step(step, exc, step_context=upload_context)
        if reader is None:
            raise PipelineError("upload step did not produce a segment reader")

        # 3. plan
        plan_context = {
            "duration_s": duration_s,
            "segment_duration_s": config.segment_duration_s,
            "overlap_s": config.overlap_s,
            "max_request_bytes": config.max_request_bytes,
        }
        step = start_step("plan", step_context=plan_context)
        try:
            check_cancelled()
            plan = plan_segments(
                duration_s,
                byte_size=source.byte_size,
                segment_duration_s=config.segment_duration_s,
                overlap_s=config.overlap_s,
                max_request_bytes=config.max_request_bytes,
            )
            validate_plan(plan)
            digest = plan_hash(plan)
            discarded = manifest.reset_segment_results(digest)
            if discarded:
                logger.info("Plan changed; discarding %s stored segment results", discarded)
            if config.resume:
                reused = _load_segment_results(manifest, paths, plan)
            manifest.artifacts.segment_count = len(plan)
            manifest.artifacts.segment_results_dir = manifest_path_ref(paths.segments_dir, base_dir=paths.run_dir)

            logger.info("Planned %s segment(s) for %.1fs of audio", len(plan), duration_s)
            progress.plan_ready(len(plan))
            complete_step(
                step,
                step_context=plan_context,
                artifacts={"plan_hash": digest, "segment_count": len(plan), "reused_segments": sorted(reused)},
            )
        except Exception as exc:
            fail_step(step, exc, step_context=plan_context)

        # 4. transcribe
        transcribe_context = {
            "provider": type(config.transcription_provider).__name__,
            "segment_count": len(plan),
            "reused_segments": len(reused),
            "max_concurrent_segments": config.max_concurrent_segments,
        }
        step = start_step("transcribe", step_context=transcribe_context)
        try:
            stitcher = IncrementalStitcher(
                plan,
                filename=source.filename,
                overlap_tolerance_s=config.overlap_tolerance_s,
                speaker_mode=config.speaker_mode,
                speaker_switch_gap_s=config.speaker_switch_gap_s,
                strict=config.strict_stitching,
            )
            for index in sorted(reused):
                plan[index].status = "done"
                progress.segment_completed(reused[index], stitcher.add(reused[index]))

            remaining = [segment for segment in plan if segment.index not in reused]
            if remaining:
                check_cancelled()
                scheduler = TranscriptionScheduler(
                    config.transcription_provider,
                    reader,
                    source_filename=source.filename,
                    mime_type=source.mime_hint,
                    retry_policy=config.retry_policy,
                    admission_delay_s=config.admission_delay_s,
                    call_timeout_s=config.call_timeout_s,
                    sleep=config.sleep,
                    cancel_event=cancel_event,
                    on_admitted=lambda segment: progress.segment_admitted(segment.index),
                )
                async with aclosing(scheduler.run(remaining, config.max_concurrent_segments)) as results:
                    async for result in results:
                        _store_segment_result(result, manifest, paths)
                        persist_manifest(manifest, paths.manifest_path)
                        progress.segment_completed(result, stitcher.add(result))

            complete_step(
                step,
                step_context=transcribe_context,
                artifacts={"segment_result_paths": manifest.artifacts.segment_result_paths},
            )
        except Exception as exc:
            fail_step(step, exc, step_context=transcribe_context)
        if stitcher is None:
            raise PipelineError("transcribe step did not produce a stitcher")

        # 5. stitch
        stitch_context = {"speaker_mode": config.speaker_mode, "segment_count": len(plan)}
        step = start_step("stitch", step_context=stitch_context)
        try:
            check_cancelled()
            progress.finalizing()
            document = stitcher.finish()
            manifest.artifacts.transcript_word_count = document.word_count
            manifest.artifacts.transcript_duration_s = document.total_duration_s
            manifest.artifacts.transcript_title = document.title
            complete_step(
                step,
                step_context=stitch_context,
                artifacts={"word_count": document.word_count, "title": document.title},
            )
        except Exception as exc:
            fail_step(step, exc, step_context=stitch_context)
        if document is None:
            raise PipelineError("stitch step did not produce a transcript document")

        # 6. write outputs
        write_context = {
            "transcript_path": str(paths.transcript_path),
            "transcript_json_path": str(paths.transcript_json_path),
        }
        step = start_step("write_outputs", step_context=write_context)
        try:
            check_cancelled()
            write_text_file(paths.transcript_path, document.to_text().rstrip() + "\n")
            write_json_file(paths.transcript_json_path, document.to_dict())
            manifest.artifacts.transcript_path = manifest_path_ref(paths.transcript_path, base_dir=paths.run_dir)
            manifest.artifacts.transcript_sha256 = sha256_file(paths.transcript_path)
            manifest.artifacts.transcript_json_path = manifest_path_ref(paths.transcript_json_path, base_dir=paths.run_dir)
            complete_step(
                step,
                step_context=write_context,
                artifacts={
                    "transcript_path": manifest.artifacts.transcript_path,
                    "transcript_sha256": manifest.artifacts.transcript_sha256,
                    "transcript_json_path": manifest.artifacts.transcript_json_path,
                },
            )
        except Exception as exc:
            fail_step(step, exc, step_context=write_context)

        progress.complete(document)
        logger.info("Job %s complete: %s words over %s", manifest.run_id, document.word_count, document.duration)
        return TranscriptionRun(manifest=manifest, document=document, paths=paths)
    finally:
        if events is not None:
            events.close()


async def _stage_source(
    source: AudioSource,
    config: JobConfig,
    manifest: Manifest,
    paths: PipelinePaths,
    progress: ProgressAggregator,
    cancel_event: asyncio.Event | None,
) -> str:
    if config.staging is None:
        raise PipelineError("staging requires a destination")
    transport = ChunkTransport(
        config.staging,
        chunk_size_bytes=config.chunk_size_bytes,
        retry_delays_s=config.upload_retry_delays_s,
        sleep=config.sleep,
        cancel_event=cancel_event,
    )
    object_name = _object_name(source)
    if not needs_resumable_upload(source.byte_size, config.resumable_threshold_bytes):
        return await transport.put(source.path, object_name=object_name, mime_type=source.mime_hint)

    def on_chunk(session: UploadSession) -> None:
        manifest.artifacts.upload_session = session.to_dict()
        persist_manifest(manifest, paths.manifest_path)
        progress.upload_progress(session)

    session: UploadSession | None = None
    stored = manifest.artifacts.upload_session
    if config.resume and stored:
        candidate = UploadSession.from_dict(stored)
        if candidate.source_id == source.id and candidate.total_bytes == source.byte_size:
            session = candidate

    send_kwargs = {"object_name": object_name, "source_id": source.id, "mime_type": source.mime_hint, "on_progress": on_chunk}
    try:
        session = await transport.send(source.path, session=session, **send_kwargs)
    except UploadSessionExpiredError as exc:
        if session is None:
            raise
        logger.warning("Stored upload session %s is no longer usable (%s); restarting upload", session.id, exc)
        session = await transport.send(source.path, **send_kwargs)
    return session.upload_url or object_name


def _store_segment_result(result: SegmentResult, manifest: Manifest, paths: PipelinePaths) -> None:
    path = paths.segment_result_path(result.segment_index)
    write_json_file(path, result.to_dict())
    manifest.add_segment_result(manifest_path_ref(path, base_dir=paths.run_dir))


def _load_segment_results(manifest: Manifest, paths: PipelinePaths, plan: list[SegmentDescriptor]) -> dict[int, SegmentResult]:
    planned = {segment.index for segment in plan}
    results: dict[int, SegmentResult] = {}
    kept: list[str] = []
    for ref in manifest.artifacts.segment_result_paths:
        path = resolve_path_ref(ref, base_dir=paths.run_dir)
        if not path.exists():
            logger.warning("Stored segment result %s is missing; it will be transcribed again", ref)
            continue
        result = SegmentResult.from_dict(read_json_file(path))
        if result.segment_index not in planned:
            raise PlanningError(f"stored result {ref} does not belong to the current plan")
        results[result.segment_index] = result
        kept.append(ref)
    manifest.artifacts.segment_result_paths = sorted(kept)
    if results:
        logger.info("Reusing %s stored segment result(s)", len(results))
    return results


async def stream_job(
    input_path: Path,
    config: JobConfig,
    *,
    cancel_event: asyncio.Event | None = None,
) -> AsyncIterator[ProgressEvent]:
    """
    Run a job in a background task and yield its ProgressEvents in order.

    The stream ends after the terminal event. Failures already reported by an
    ``error`` or ``cancelled`` event are not raised again; closing the stream
    early cancels the job.
    """
    channel = EventChannel()
    task = asyncio.create_task(run_job(input_path, config, events=channel, cancel_event=cancel_event))
    try:
        async for event in channel:
            yield event
        await asyncio.wait({task})
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, (PipelineError, JobCancelledError)):
        raise exc


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return repr(value)


__all__ = [
    "JobConfig",
    "TranscriptionRun",
    "run_job",
    "stream_job",
]
