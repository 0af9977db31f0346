from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import uuid4

from src.adapters.staging import StagingDestination
from src.contracts.artifacts import UploadSession
from src.contracts.errors import (
    InputValidationError,
    JobCancelledError,
    TransportNetworkError,
    TransportRetryExhaustedError,
    UploadSessionExpiredError,
)


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE_BYTES = 5 * 1024 * 1024
DEFAULT_RESUMABLE_THRESHOLD_BYTES = 50 * 1024 * 1024
DEFAULT_RETRY_DELAYS_S: tuple[float, ...] = (1.0, 3.0, 5.0)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]
UploadProgressCallback = Callable[[UploadSession], None]


def needs_resumable_upload(byte_size: int, threshold_bytes: int = DEFAULT_RESUMABLE_THRESHOLD_BYTES) -> bool:
    return byte_size > threshold_bytes


def _read_chunk(path: Path, offset: int, size: int) -> bytes:
    with path.open("rb") as fh:
        fh.seek(offset)
        return fh.read(size)


class ChunkTransport:
    """
    Sequential, resumable chunk upload to a staging destination.

    Only the chunk in flight is ever retried, using ``retry_delays_s`` in
    order; acknowledged bytes are never sent again. Retryable failures are
    ``TransportNetworkError``; anything else from the destination is fatal.
    """

    def __init__(
        self,
        destination: StagingDestination,
        *,
        chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES,
        retry_delays_s: Sequence[float] = DEFAULT_RETRY_DELAYS_S,
        sleep: SleepFn = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if chunk_size_bytes <= 0:
            raise ValueError("chunk_size_bytes must be > 0")
        if any(delay < 0 for delay in retry_delays_s):
            raise ValueError("retry delays must be >= 0")
        self._destination = destination
        self._chunk_size_bytes = chunk_size_bytes
        self._retry_delays_s = tuple(retry_delays_s)
        self._sleep = sleep
        self._cancel_event = cancel_event

    async def send(
        self,
        source_path: Path,
        *,
        object_name: str,
        source_id: str,
        mime_type: str,
        session: UploadSession | None = None,
        on_progress: UploadProgressCallback | None = None,
    ) -> UploadSession:
        source_path = Path(source_path)
        total_bytes = source_path.stat().st_size
        if total_bytes <= 0:
            raise InputValidationError(f"cannot upload an empty file: {source_path}")

        if session is None:
            locator = await self._with_retries(
                lambda: self._destination.create_upload(object_name, total_bytes=total_bytes, mime_type=mime_type),
                action=f"create upload {object_name}",
            )
            session = UploadSession(
                id=uuid4().hex,
                source_id=source_id,
                object_name=object_name,
                chunk_size_bytes=self._chunk_size_bytes,
                total_bytes=total_bytes,
                upload_url=locator,
            )
            logger.info("Created upload session %s for %s (%s bytes)", session.id, object_name, total_bytes)
        else:
            await self._resume(session, total_bytes)

        if on_progress is not None:
            on_progress(session)

        while not session.complete:
            self._check_cancelled()
            start = session.bytes_acknowledged
            size = min(session.chunk_size_bytes, session.total_bytes - start)
            data = await asyncio.to_thread(_read_chunk, source_path, start, size)
            new_offset = await self._send_chunk(session, start, data)
            self._acknowledge(session, new_offset)
            session.retry_state.reset()
            logger.debug("Chunk acknowledged for %s: %s/%s bytes", session.object_name, new_offset, session.total_bytes)
            if on_progress is not None:
                on_progress(session)

        logger.info("Upload complete for %s (%s bytes)", session.object_name, session.total_bytes)
        return session

    async def put(self, source_path: Path, *, object_name: str, mime_type: str) -> str:
        """One-shot upload for files below the resumable threshold."""
        source_path = Path(source_path)
        data = await asyncio.to_thread(source_path.read_bytes)
        locator = await self._with_retries(
            lambda: self._destination.put_object(object_name, data, mime_type=mime_type),
            action=f"upload {object_name}",
        )
        logger.info("Uploaded %s in one request (%s bytes)", object_name, len(data))
        return locator

    async def _resume(self, session: UploadSession, total_bytes: int) -> None:
        if session.total_bytes != total_bytes:
            raise InputValidationError(
                f"upload session {session.id} expects {session.total_bytes} bytes, file has {total_bytes}"
            )
        if not session.upload_url:
            raise UploadSessionExpiredError(f"upload session {session.id} has no destination locator")
        offset = await self._with_retries(
            lambda: self._destination.query_offset(session.upload_url or ""),
            action=f"query offset of {session.object_name}",
        )
        if offset is None:
            raise UploadSessionExpiredError(f"staging object for session {session.id} no longer exists")
        self._acknowledge(session, offset)
        logger.info("Resuming upload %s at byte %s/%s", session.id, offset, session.total_bytes)

    async def _send_chunk(self, session: UploadSession, start: int, data: bytes) -> int:
        locator = session.upload_url or ""
        delays = iter(self._retry_delays_s)
        offset = start
        payload = data
        while True:
            try:
                return await self._destination.append_chunk(locator, offset, payload)
            except TransportNetworkError as exc:
                session.retry_state.attempts += 1
                session.retry_state.last_error = str(exc)
                delay = next(delays, None)
                if delay is None:
                    raise TransportRetryExhaustedError(
                        f"chunk at byte {start} of {session.object_name} failed after "
                        f"{session.retry_state.attempts} attempts"
                    ) from exc
                logger.warning(
                    "Chunk at byte %s of %s failed (%s); retrying in %ss",
                    start,
                    session.object_name,
                    exc,
                    delay,
                )
                self._check_cancelled()
                await self._sleep(delay)
                self._check_cancelled()

            # The destination may have persisted part of the chunk before failing.
            try:
                stored = await self._destination.query_offset(locator)
            except TransportNetworkError:
                continue
            if stored is None or stored < start:
                raise UploadSessionExpiredError(f"staging object for session {session.id} lost acknowledged bytes")
            if stored >= start + len(data):
                return stored
            if stored > offset:
                payload = data[stored - start:]
                offset = stored

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], *, action: str) -> T:
        delays = iter(self._retry_delays_s)
        while True:
            try:
                return await operation()
            except TransportNetworkError as exc:
                delay = next(delays, None)
                if delay is None:
                    raise TransportRetryExhaustedError(f"failed to {action}: {exc}") from exc
                logger.warning("Failed to %s (%s); retrying in %ss", action, exc, delay)
                self._check_cancelled()
                await self._sleep(delay)
                self._check_cancelled()

    @staticmethod
    def _acknowledge(session: UploadSession, offset: int) -> None:
        try:
            session.acknowledge(offset)
        except ValueError as exc:
            raise UploadSessionExpiredError(f"upload session {session.id}: {exc}") from exc

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise JobCancelledError("upload cancelled")


__all__ = [
    "ChunkTransport",
    "DEFAULT_CHUNK_SIZE_BYTES",
    "DEFAULT_RESUMABLE_THRESHOLD_BYTES",
    "DEFAULT_RETRY_DELAYS_S",
    "needs_resumable_upload",
]
