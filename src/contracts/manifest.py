from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from .errors import ContractError
from src.utils.time import now_unix_s

StepStatus = Literal["pending", "skipped", "success", "failed", "cancelled"]


@dataclass(slots=True)
class StepRecord:
    name: str
    status: StepStatus = "pending"
    started_at_s: float | None = None
    ended_at_s: float | None = None
    duration_ms: int | None = None
    attempts: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    error: str | dict[str, Any] | None = None
    error_type: str | None = None

    def start(self, *, at_s: float | None = None) -> None:
        self.started_at_s = now_unix_s() if at_s is None else at_s
        self.status = "pending"
        self.attempts += 1

    def finish(
        self,
        *,
        status: StepStatus,
        at_s: float | None = None,
        error: str | dict[str, Any] | None = None,
        error_type: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.ended_at_s = now_unix_s() if at_s is None else at_s
        self.status = status
        self.error = error
        self.error_type = error_type
        if meta:
            self.meta.update(meta)
        self.duration_ms = self.compute_duration_ms()

    def compute_duration_ms(self) -> int | None:
        if self.started_at_s is None or self.ended_at_s is None:
            return None
        return max(0, int(round((self.ended_at_s - self.started_at_s) * 1000)))


@dataclass(slots=True)
class ArtifactRefs:
    """
    Persistable references to produced artifacts.
    Keep these as paths/strings/metadata, not large blobs.
    """

    input_path: str | None = None
    input_sha256: str | None = None
    input_mime: str | None = None
    input_bytes: int | None = None
    duration_estimate_s: float | None = None

    staged_object_name: str | None = None
    upload_session: dict[str, Any] | None = None

    plan_hash: str | None = None
    segment_count: int | None = None
    segment_results_dir: str | None = None
    segment_result_paths: list[str] = field(default_factory=list)

    transcript_path: str | None = None
    transcript_sha256: str | None = None
    transcript_json_path: str | None = None
    transcript_word_count: int | None = None
    transcript_duration_s: float | None = None
    transcript_title: str | None = None


@dataclass(slots=True)
class Manifest:
    """
    Persistable job manifest and resume contract.
    """

    version: str = "1"
    run_id: str | None = None
    created_at_s: float | None = None
    updated_at_s: float | None = None
    input_sha256: str | None = None
    artifacts: ArtifactRefs = field(default_factory=ArtifactRefs)
    steps: dict[str, StepRecord] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def ensure_step(self, name: str) -> StepRecord:
        if name not in self.steps:
            self.steps[name] = StepRecord(name=name)
        return self.steps[name]

    def touch(self, *, at_s: float | None = None) -> None:
        ts = now_unix_s() if at_s is None else at_s
        if self.created_at_s is None:
            self.created_at_s = ts
        self.updated_at_s = ts

    def staged_locator(self, input_sha256: str) -> str | None:
        """Locator of the staged copy of this input, if an earlier run left one."""
        hashes = {"input_sha256": input_sha256}
        if should_skip_step(self, "upload", require_artifact_paths=["staged_object_name"], expected_inputs_hashes=hashes):
            return self.artifacts.staged_object_name
        # A resumed run records the reused upload as skipped; the object is still staged.
        record = self.steps.get("upload")
        if record is None or record.status != "skipped":
            return None
        if (self.input_sha256 or self.artifacts.input_sha256) != input_sha256:
            return None
        return self.artifacts.staged_object_name or None

    def add_segment_result(self, ref: str) -> None:
        if ref not in self.artifacts.segment_result_paths:
            self.artifacts.segment_result_paths = sorted([*self.artifacts.segment_result_paths, ref])

    def reset_segment_results(self, plan_hash: str) -> int:
        """Adopt a new plan; stored results of any other plan are forgotten."""
        discarded = 0
        if self.artifacts.plan_hash != plan_hash:
            discarded = len(self.artifacts.segment_result_paths)
            self.artifacts.segment_result_paths = []
        self.artifacts.plan_hash = plan_hash
        return discarded

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        try:
            artifacts = ArtifactRefs(**(data.get("artifacts") or {}))
            steps_raw = data.get("steps") or {}
            steps: dict[str, StepRecord] = {}
            for step_name, step_data in steps_raw.items():
                if "name" not in step_data:
                    step_data = {"name": step_name, **step_data}
                step = StepRecord(**step_data)
                step.duration_ms = step.compute_duration_ms() if step.duration_ms is None else step.duration_ms
                steps[step_name] = step

            return cls(
                version=str(data.get("version", "1")),
                run_id=data.get("run_id"),
                created_at_s=data.get("created_at_s"),
                updated_at_s=data.get("updated_at_s"),
                input_sha256=data.get("input_sha256"),
                artifacts=artifacts,
                steps=steps,
                warnings=list(data.get("warnings") or []),
                errors=list(data.get("errors") or []),
            )
        except TypeError as exc:
            raise ContractError(f"Invalid manifest shape: {exc}") from exc

    @classmethod
    def read_json(cls, path: Path) -> "Manifest":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ContractError(f"Manifest is not valid JSON: {path}") from exc
        return cls.from_dict(data)


def should_skip_step(
    manifest: Manifest,
    step_name: str,
    *,
    require_artifact_paths: list[str] | None = None,
    expected_inputs_hashes: dict[str, str] | None = None,
) -> bool:
    """
    Idempotency helper:
    - Step must be marked success
    - Required artifact refs must be present
    - If expected hashes are provided, they must match manifest hashes
    """
    rec = manifest.steps.get(step_name)
    if not rec or rec.status != "success":
        return False

    if expected_inputs_hashes:
        for key, expected in expected_inputs_hashes.items():
            if key == "input_sha256":
                actual = manifest.input_sha256 or manifest.artifacts.input_sha256
            elif hasattr(manifest.artifacts, key):
                actual = getattr(manifest.artifacts, key)
            else:
                raise ContractError(f"Unknown hash field '{key}' required by {step_name}")
            if actual != expected:
                return False

    if not require_artifact_paths:
        return True

    for attr in require_artifact_paths:
        if not hasattr(manifest.artifacts, attr):
            raise ContractError(f"Unknown artifact ref '{attr}' required by {step_name}")
        if _is_empty(getattr(manifest.artifacts, attr)):
            return False

    return True


def _is_empty(value: Any) -> bool:
    return value in (None, "", [], {})


__all__ = [
    "ArtifactRefs",
    "Manifest",
    "StepRecord",
    "StepStatus",
    "should_skip_step",
]
