from __future__ import annotations

import asyncio
import base64
import json
import logging
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import urljoin

import httpx

from src.contracts.errors import (
    InputValidationError,
    TransportNetworkError,
    TransportRejectedError,
    UploadSessionExpiredError,
)


logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
_RETRYABLE_STATUS = frozenset({409, 423, 429, 460, 500, 502, 503, 504})
_EXPIRED_STATUS = frozenset({404, 410})


class StagingDestination(Protocol):
    """Byte store the raw recording is staged in before transcription."""

    async def create_upload(self, object_name: str, *, total_bytes: int, mime_type: str) -> str:
        """Register a resumable upload and return its locator."""

    async def query_offset(self, locator: str) -> int | None:
        """Bytes the destination holds for ``locator``; ``None`` if the object is gone."""

    async def append_chunk(self, locator: str, offset: int, data: bytes) -> int:
        """Store ``data`` at ``offset`` and return the new acknowledged offset."""

    async def put_object(self, object_name: str, data: bytes, *, mime_type: str) -> str:
        """One-shot upload for small files; returns the object's locator."""

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        """Return bytes ``[start, end)`` of a staged object."""


class SegmentAudioReader(Protocol):
    async def read_range(self, start: int, end: int) -> bytes:
        """Return bytes ``[start, end)`` of the recording."""


class FileRangeReader:
    """Reads segment bytes straight from the local recording."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    async def read_range(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read, start, end)

    def _read(self, start: int, end: int) -> bytes:
        with self._path.open("rb") as fh:
            fh.seek(start)
            return fh.read(max(0, end - start))


class StagedObjectReader:
    """Reads segment bytes back out of the staging store."""

    def __init__(self, destination: StagingDestination, locator: str) -> None:
        self._destination = destination
        self._locator = locator

    async def read_range(self, start: int, end: int) -> bytes:
        return await self._destination.read_range(self._locator, start, end)


def _safe_object_path(root_dir: Path, object_name: str) -> Path:
    relative = PurePosixPath(object_name)
    if not object_name or relative.is_absolute() or ".." in relative.parts:
        raise InputValidationError(f"invalid staging object name: {object_name!r}")
    return root_dir.joinpath(*relative.parts)


class LocalStagingDestination(StagingDestination):
    """
    Directory-backed staging store.
    Partial uploads live at ``<name>.part`` with a ``<name>.part.json`` sidecar
    recording the expected size, and are renamed into place once complete.
    """

    def __init__(self, root_dir: Path, *, quota_bytes: int | None = None) -> None:
        if quota_bytes is not None and quota_bytes <= 0:
            raise ValueError("quota_bytes must be > 0")
        self._root_dir = Path(root_dir)
        self._quota_bytes = quota_bytes

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    async def create_upload(self, object_name: str, *, total_bytes: int, mime_type: str) -> str:
        self._check_quota(object_name, total_bytes)
        return await asyncio.to_thread(self._create_upload, object_name, total_bytes, mime_type)

    async def query_offset(self, locator: str) -> int | None:
        return await asyncio.to_thread(self._query_offset, locator)

    async def append_chunk(self, locator: str, offset: int, data: bytes) -> int:
        return await asyncio.to_thread(self._append_chunk, locator, offset, data)

    async def put_object(self, object_name: str, data: bytes, *, mime_type: str) -> str:
        self._check_quota(object_name, len(data))
        return await asyncio.to_thread(self._put_object, object_name, data)

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read_range, locator, start, end)

    def _check_quota(self, object_name: str, total_bytes: int) -> None:
        if self._quota_bytes is not None and total_bytes > self._quota_bytes:
            raise TransportRejectedError(
                f"staging quota exceeded for {object_name}: {total_bytes} > {self._quota_bytes} bytes"
            )

    def _paths(self, locator: str) -> tuple[Path, Path, Path]:
        final_path = _safe_object_path(self._root_dir, locator)
        part_path = final_path.with_name(final_path.name + ".part")
        meta_path = final_path.with_name(final_path.name + ".part.json")
        return final_path, part_path, meta_path

    def _create_upload(self, object_name: str, total_bytes: int, mime_type: str) -> str:
        final_path, part_path, meta_path = self._paths(object_name)
        part_path.parent.mkdir(parents=True, exist_ok=True)
        part_path.write_bytes(b"")
        meta_path.write_text(
            json.dumps({"total_bytes": total_bytes, "mime_type": mime_type}),
            encoding="utf-8",
        )
        final_path.unlink(missing_ok=True)
        return object_name

    def _query_offset(self, locator: str) -> int | None:
        final_path, part_path, _ = self._paths(locator)
        if part_path.exists():
            return part_path.stat().st_size
        if final_path.exists():
            return final_path.stat().st_size
        return None

    def _append_chunk(self, locator: str, offset: int, data: bytes) -> int:
        final_path, part_path, meta_path = self._paths(locator)
        if not part_path.exists() or not meta_path.exists():
            raise UploadSessionExpiredError(f"no pending upload for {locator}")
        current = part_path.stat().st_size
        if offset != current:
            raise TransportNetworkError(f"offset mismatch for {locator}: sent {offset}, stored {current}")
        total_bytes = int(json.loads(meta_path.read_text(encoding="utf-8"))["total_bytes"])
        if current + len(data) > total_bytes:
            raise TransportRejectedError(f"chunk overruns declared size {total_bytes} for {locator}")

        with part_path.open("ab") as fh:
            fh.write(data)
        new_offset = current + len(data)
        if new_offset == total_bytes:
            part_path.replace(final_path)
            meta_path.unlink(missing_ok=True)
        return new_offset

    def _put_object(self, object_name: str, data: bytes) -> str:
        final_path, _, _ = self._paths(object_name)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = final_path.with_name(final_path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(final_path)
        return object_name

    def _read_range(self, locator: str, start: int, end: int) -> bytes:
        final_path, _, _ = self._paths(locator)
        if not final_path.exists():
            raise UploadSessionExpiredError(f"staged object not found: {locator}")
        with final_path.open("rb") as fh:
            fh.seek(start)
            return fh.read(max(0, end - start))


def _encode_metadata(metadata: dict[str, str]) -> str:
    pairs = []
    for key, value in metadata.items():
        encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
        pairs.append(f"{key} {encoded}")
    return ",".join(pairs)


class TusStagingDestination(StagingDestination):
    """Staging store speaking tus 1.0.0 (creation, creation-with-upload) over HTTP."""

    def __init__(
        self,
        endpoint: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
        timeout_s: float = 120.0,
    ) -> None:
        if not endpoint:
            raise ValueError("endpoint is required")
        self._endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._headers = {"Tus-Resumable": TUS_VERSION, **(headers or {})}
        self._metadata = dict(metadata or {})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TusStagingDestination":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def create_upload(self, object_name: str, *, total_bytes: int, mime_type: str) -> str:
        response = await self._send(
            "POST",
            self._endpoint,
            headers={
                "Upload-Length": str(total_bytes),
                "Upload-Metadata": self._upload_metadata(object_name, mime_type),
            },
            action=f"create upload for {object_name}",
        )
        return self._location(response, object_name)

    async def query_offset(self, locator: str) -> int | None:
        try:
            response = await self._send("HEAD", locator, action=f"query offset of {locator}")
        except UploadSessionExpiredError:
            return None
        return self._upload_offset(response, locator)

    async def append_chunk(self, locator: str, offset: int, data: bytes) -> int:
        response = await self._send(
            "PATCH",
            locator,
            headers={
                "Upload-Offset": str(offset),
                "Content-Type": "application/offset+octet-stream",
            },
            content=data,
            action=f"append {len(data)} bytes at {offset} to {locator}",
        )
        return self._upload_offset(response, locator)

    async def put_object(self, object_name: str, data: bytes, *, mime_type: str) -> str:
        response = await self._send(
            "POST",
            self._endpoint,
            headers={
                "Upload-Length": str(len(data)),
                "Upload-Metadata": self._upload_metadata(object_name, mime_type),
                "Content-Type": "application/offset+octet-stream",
            },
            content=data,
            action=f"upload {object_name}",
        )
        locator = self._location(response, object_name)
        offset = response.headers.get("Upload-Offset")
        if offset is not None and int(offset) != len(data):
            # Server accepted creation but not the whole body; finish it the resumable way.
            await self.append_chunk(locator, int(offset), data[int(offset):])
        return locator

    async def read_range(self, locator: str, start: int, end: int) -> bytes:
        if end <= start:
            return b""
        response = await self._send(
            "GET",
            locator,
            headers={"Range": f"bytes={start}-{end - 1}"},
            action=f"read bytes {start}-{end} of {locator}",
        )
        if response.status_code == 206:
            return response.content
        return response.content[start:end]

    def _upload_metadata(self, object_name: str, mime_type: str) -> str:
        metadata = {
            "objectName": object_name,
            "filename": PurePosixPath(object_name).name,
            "contentType": mime_type,
            **self._metadata,
        }
        return _encode_metadata(metadata)

    def _location(self, response: httpx.Response, object_name: str) -> str:
        location = response.headers.get("Location")
        if not location:
            raise TransportRejectedError(f"tus server returned no Location for {object_name}")
        return urljoin(self._endpoint, location)

    @staticmethod
    def _upload_offset(response: httpx.Response, locator: str) -> int:
        raw = response.headers.get("Upload-Offset")
        if raw is None:
            raise TransportNetworkError(f"tus server returned no Upload-Offset for {locator}")
        try:
            return int(raw)
        except ValueError as exc:
            raise TransportNetworkError(f"invalid Upload-Offset {raw!r} for {locator}") from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        action: str,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                url,
                headers={**self._headers, **(headers or {})},
                content=content,
            )
        except httpx.TransportError as exc:
            raise TransportNetworkError(f"failed to {action}: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            return response
        if status in _RETRYABLE_STATUS:
            raise TransportNetworkError(f"failed to {action}: HTTP {status}")
        if status in _EXPIRED_STATUS:
            raise UploadSessionExpiredError(f"failed to {action}: HTTP {status}")
        raise TransportRejectedError(f"failed to {action}: HTTP {status} {response.text[:200]}")


__all__ = [
    "FileRangeReader",
    "LocalStagingDestination",
    "SegmentAudioReader",
    "StagedObjectReader",
    "StagingDestination",
    "TUS_VERSION",
    "TusStagingDestination",
]
