# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.sink",
#   "purpose": "Stream response bodies to storage with progress notification.",
#   "sections": [
#     {"id": "progressnotifier", "name": "ProgressNotifier", "anchor": "class-progressnotifier", "kind": "class"},
#     {"id": "loggingprogress", "name": "LoggingProgress", "anchor": "class-loggingprogress", "kind": "class"},
#     {"id": "localstorage", "name": "LocalStorage", "anchor": "class-localstorage", "kind": "class"},
#     {"id": "filesink", "name": "FileSink", "anchor": "class-filesink", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Stream response bodies to storage with progress notification.

:class:`FileSink` writes chunks in arrival order and reports the running byte
count after every chunk to a :class:`ProgressNotifier`. Storage is an injected
capability so tests and callers can redirect writes; :class:`LocalStorage`
writes to the local filesystem from a worker thread. When a write or the
upstream stream fails, the destination is left with whatever was written.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional, Protocol, Union

from ReqFlow.errors import BodyError, ReqFlowError, StorageWriteFailed

logger = logging.getLogger(__name__)

__all__ = [
    "ProgressNotifier",
    "LoggingProgress",
    "StorageHandle",
    "Storage",
    "LocalStorage",
    "FileSink",
]


class ProgressNotifier(Protocol):
    """Callback receiving ``(transferred, total)`` after every written chunk."""

    def __call__(self, transferred: int, total: Optional[int]) -> None: ...


class LoggingProgress:
    """Progress notifier that logs ``download progress`` every ``threshold_bytes``."""

    def __init__(self, log: Optional[logging.Logger] = None, threshold_bytes: int = 1 << 20) -> None:
        self.logger = log or logger
        self.threshold_bytes = threshold_bytes
        self._last_bytes = 0

    def __call__(self, transferred: int, total: Optional[int]) -> None:
        if self.threshold_bytes <= 0:
            return
        if transferred - self._last_bytes < self.threshold_bytes and transferred != total:
            return
        progress = {"bytes_downloaded": transferred}
        if total:
            progress["total_bytes"] = total
            progress["percent"] = round(min(transferred / total, 1.0) * 100, 1)
        self.logger.info(
            "download progress",
            extra={"event": "download_progress", "progress": progress},
        )
        self._last_bytes = transferred


# ============================================================================
# Storage
# ============================================================================


class StorageHandle(Protocol):
    async def write(self, data: bytes) -> None: ...

    async def aclose(self) -> None: ...


class Storage(Protocol):
    async def create_or_truncate(self, path: Path) -> StorageHandle: ...


class _LocalHandle:
    def __init__(self, handle: BinaryIO) -> None:
        self._handle = handle

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._handle.write, data)

    async def aclose(self) -> None:
        await asyncio.to_thread(self._handle.close)


class LocalStorage:
    """Local filesystem storage; parent directories are created on demand."""

    async def create_or_truncate(self, path: Path) -> StorageHandle:
        def _open() -> BinaryIO:
            path.parent.mkdir(parents=True, exist_ok=True)
            return open(path, "wb")

        return _LocalHandle(await asyncio.to_thread(_open))


# ============================================================================
# Sink
# ============================================================================


class FileSink:
    """Writes a chunk stream to a path, notifying progress per chunk."""

    def __init__(
        self,
        storage: Optional[Storage] = None,
        notifier: Optional[ProgressNotifier] = None,
    ) -> None:
        self.storage = storage or LocalStorage()
        self.notifier = notifier

    async def consume(
        self,
        chunks: AsyncIterator[bytes],
        path: Union[str, os.PathLike],
        total: Optional[int] = None,
    ) -> int:
        """Write every chunk to ``path`` and return the byte count.

        Raises:
            StorageWriteFailed: if the destination cannot be opened or written.
            BodyError: if the upstream stream fails part-way.
        """
        destination = Path(path)
        try:
            handle = await self.storage.create_or_truncate(destination)
        except OSError as exc:
            raise StorageWriteFailed(f"Cannot open {destination}: {exc}") from exc

        written = 0
        try:
            while True:
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                except BodyError:
                    raise
                except ReqFlowError as exc:
                    raise BodyError(
                        f"Stream failed after {written} bytes written to {destination}: {exc}"
                    ) from exc
                try:
                    await handle.write(chunk)
                except OSError as exc:
                    raise StorageWriteFailed(
                        f"Write to {destination} failed: {exc}", bytes_written=written
                    ) from exc
                written += len(chunk)
                if self.notifier is not None:
                    self.notifier(written, total)
        finally:
            try:
                await handle.aclose()
            except OSError as exc:
                logger.warning(
                    "Failed to close sink destination",
                    extra={"path": str(destination), "error": str(exc)},
                )

        logger.debug(
            "Body written to storage",
            extra={"path": str(destination), "bytes": written},
        )
        return written
