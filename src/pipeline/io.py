from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.contracts.errors import ContractError
from src.contracts.manifest import Manifest


@dataclass(frozen=True, slots=True)
class PipelinePaths:
    run_dir: Path
    manifest_path: Path
    transcript_path: Path
    transcript_json_path: Path
    segments_dir: Path

    def segment_result_path(self, index: int) -> Path:
        return self.segments_dir / f"segment_{index:04d}.json"


def build_pipeline_paths(
    run_dir: Path,
    *,
    manifest_filename: str = "manifest.json",
    transcript_filename: str = "transcript.txt",
    transcript_json_filename: str = "transcript.json",
    segments_dirname: str = "segments",
) -> PipelinePaths:
    run_dir = Path(run_dir)
    return PipelinePaths(
        run_dir=run_dir,
        manifest_path=run_dir / manifest_filename,
        transcript_path=run_dir / transcript_filename,
        transcript_json_path=run_dir / transcript_json_filename,
        segments_dir=run_dir / segments_dirname,
    )


def manifest_path_ref(path: Path, *, base_dir: Path) -> str:
    path = Path(path)
    base_dir = Path(base_dir)
    try:
        return path.relative_to(base_dir).as_posix()
    except ValueError:
        return str(path)


def resolve_path_ref(ref: str, *, base_dir: Path) -> Path:
    path = Path(ref)
    return path if path.is_absolute() else Path(base_dir) / path


def write_text_file(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    _atomic_write_bytes(path, text.encode(encoding))


def write_json_file(path: Path, data: Any) -> None:
    payload = json.dumps(data, indent=2, sort_keys=True, default=str).encode("utf-8")
    _atomic_write_bytes(path, payload)


def read_json_file(path: Path) -> Any:
    path = Path(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ContractError(f"not valid JSON: {path}") from exc


def persist_manifest(manifest: Manifest, path: Path) -> None:
    manifest.touch()
    write_json_file(path, manifest.to_dict())


def load_manifest(path: Path) -> Manifest | None:
    path = Path(path)
    if not path.exists():
        return None
    return Manifest.read_json(path)


def _atomic_write_bytes(path: Path, payload: bytes) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp_file:
            tmp_file.write(payload)
            tmp_file.flush()
            try:
                os.fsync(tmp_file.fileno())
            except OSError:
                # Best-effort durability; some sandboxes do not support fsync.
                pass
        os.replace(tmp_path, path)
    finally:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass


__all__ = [
    "PipelinePaths",
    "build_pipeline_paths",
    "load_manifest",
    "manifest_path_ref",
    "persist_manifest",
    "read_json_file",
    "resolve_path_ref",
    "write_json_file",
    "write_text_file",
]
