# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.body",
#   "purpose": "Request payload variants exposed through a pull-based chunk producer.",
#   "sections": [
#     {"id": "chunkproducer", "name": "ChunkProducer", "anchor": "class-chunkproducer", "kind": "class"},
#     {"id": "body", "name": "Body", "anchor": "class-body", "kind": "class"},
#     {"id": "emptybody", "name": "EmptyBody", "anchor": "class-emptybody", "kind": "class"},
#     {"id": "bytesbody", "name": "BytesBody", "anchor": "class-bytesbody", "kind": "class"},
#     {"id": "streambody", "name": "StreamBody", "anchor": "class-streambody", "kind": "class"},
#     {"id": "filebody", "name": "FileBody", "anchor": "class-filebody", "kind": "class"},
#     {"id": "formbody", "name": "FormBody", "anchor": "class-formbody", "kind": "class"},
#     {"id": "jsonbody", "name": "JsonBody", "anchor": "class-jsonbody", "kind": "class"},
#     {"id": "part", "name": "Part", "anchor": "class-part", "kind": "class"},
#     {"id": "multipartbody", "name": "MultipartBody", "anchor": "class-multipartbody", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Request payload variants exposed through a pull-based chunk producer.

Every body answers three questions for the layers above it:

- ``size_hint``: exact length in bytes, or ``None`` when unknown (which forces
  chunked transfer encoding on the request).
- ``replayable``: whether :meth:`Body.open` may be called again, which decides
  whether a 307/308 redirect can resend it.
- ``open()``: a fresh :class:`ChunkProducer` whose ``next_chunk()`` returns the
  next ``bytes`` chunk or ``None`` at the end.

Form and multipart payloads are adapters over the same producer interface, so
the transport never needs to know which variant it is sending.

Example:
    >>> body = FormBody([("q", "a b"), ("lang", "en")])
    >>> body.size_hint
    13
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json
import logging
import mimetypes
import os
import secrets
from abc import ABC, abstractmethod
from pathlib import Path
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import urlencode

from ReqFlow import policy
from ReqFlow.errors import BodyError, BodyNotReplayable, BuilderError, EncodingFailed

logger = logging.getLogger(__name__)

__all__ = [
    "ChunkProducer",
    "Body",
    "EmptyBody",
    "BytesBody",
    "StreamBody",
    "FileBody",
    "FormBody",
    "JsonBody",
    "Part",
    "MultipartBody",
    "ChunkSource",
]

ChunkSource = Union[AsyncIterable[bytes], Iterable[bytes]]


# ============================================================================
# Producer
# ============================================================================


class ChunkProducer(ABC):
    """Cursor over one pass of a body."""

    @abstractmethod
    async def next_chunk(self) -> Optional[bytes]:
        """Return the next non-empty chunk, or ``None`` once exhausted."""

    async def aclose(self) -> None:
        """Release resources held by the cursor."""


class _EmptyProducer(ChunkProducer):
    async def next_chunk(self) -> Optional[bytes]:
        return None


class _BufferProducer(ChunkProducer):
    def __init__(self, data: bytes, chunk_size: int = policy.CHUNK_SIZE) -> None:
        self._view = memoryview(data)
        self._offset = 0
        self._chunk_size = chunk_size

    async def next_chunk(self) -> Optional[bytes]:
        if self._offset >= len(self._view):
            return None
        end = self._offset + self._chunk_size
        chunk = bytes(self._view[self._offset : end])
        self._offset = end
        return chunk


class _IteratorProducer(ChunkProducer):
    """Adapts sync or async iterables of ``bytes``."""

    def __init__(self, source: ChunkSource, expected: Optional[int] = None) -> None:
        self._async: Optional[AsyncIterator[bytes]] = None
        self._sync: Optional[Iterator[bytes]] = None
        if hasattr(source, "__aiter__"):
            self._async = source.__aiter__()  # type: ignore[union-attr]
        else:
            self._sync = iter(source)  # type: ignore[arg-type]
        self._expected = expected
        self._produced = 0

    async def _pull(self) -> Optional[bytes]:
        if self._async is not None:
            try:
                return await self._async.__anext__()
            except StopAsyncIteration:
                return None
        try:
            return next(self._sync)  # type: ignore[arg-type]
        except StopIteration:
            return None

    async def next_chunk(self) -> Optional[bytes]:
        while True:
            chunk = await self._pull()
            if chunk is None:
                if self._expected is not None and self._produced != self._expected:
                    raise BodyError(
                        f"Stream produced {self._produced} bytes but declared {self._expected}"
                    )
                return None
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            if chunk:
                self._produced += len(chunk)
                return bytes(chunk)

    async def aclose(self) -> None:
        closer = getattr(self._async, "aclose", None)
        if closer is not None:
            await closer()
        elif self._sync is not None and hasattr(self._sync, "close"):
            self._sync.close()  # type: ignore[union-attr]


class _FileProducer(ChunkProducer):
    def __init__(self, path: Path, chunk_size: int = policy.CHUNK_SIZE) -> None:
        self._path = path
        self._chunk_size = chunk_size
        self._handle = None

    async def next_chunk(self) -> Optional[bytes]:
        try:
            if self._handle is None:
                self._handle = await asyncio.to_thread(open, self._path, "rb")
            chunk = await asyncio.to_thread(self._handle.read, self._chunk_size)
        except OSError as exc:
            await self.aclose()
            raise BodyError(f"Failed to read upload file {self._path}: {exc}") from exc
        if not chunk:
            await self.aclose()
            return None
        return chunk

    async def aclose(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class _SegmentProducer(ChunkProducer):
    """Concatenates literal byte segments and nested bodies."""

    def __init__(self, segments: Sequence[Union[bytes, "Body"]]) -> None:
        self._segments = list(segments)
        self._index = 0
        self._current: Optional[ChunkProducer] = None

    async def next_chunk(self) -> Optional[bytes]:
        while self._index < len(self._segments):
            if self._current is not None:
                chunk = await self._current.next_chunk()
                if chunk is not None:
                    return chunk
                await self._current.aclose()
                self._current = None
                self._index += 1
                continue
            segment = self._segments[self._index]
            if isinstance(segment, bytes):
                self._index += 1
                if segment:
                    return segment
                continue
            self._current = segment.open()
        return None

    async def aclose(self) -> None:
        if self._current is not None:
            await self._current.aclose()
            self._current = None


# ============================================================================
# Body variants
# ============================================================================


class Body(ABC):
    """Base class for request payloads."""

    #: Content-Type implied by the variant, applied unless the caller set one
    content_type: Optional[str] = None

    @property
    @abstractmethod
    def size_hint(self) -> Optional[int]:
        """Exact length in bytes, or ``None`` when unknown."""

    @property
    def replayable(self) -> bool:
        return True

    @property
    def is_empty(self) -> bool:
        return False

    @abstractmethod
    def open(self) -> ChunkProducer:
        """Start a new pass over the payload."""

    async def __aiter__(self) -> AsyncIterator[bytes]:
        producer = self.open()
        try:
            while True:
                chunk = await producer.next_chunk()
                if chunk is None:
                    break
                yield chunk
        finally:
            await producer.aclose()

    async def read(self) -> bytes:
        """Collect the whole payload (one pass)."""
        return b"".join([chunk async for chunk in self])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(size_hint={self.size_hint!r})"


class EmptyBody(Body):
    """No payload."""

    @property
    def size_hint(self) -> int:
        return 0

    @property
    def is_empty(self) -> bool:
        return True

    def open(self) -> ChunkProducer:
        return _EmptyProducer()


class BytesBody(Body):
    """In-memory payload."""

    def __init__(self, data: Union[bytes, bytearray, memoryview], content_type: Optional[str] = None):
        self.data = bytes(data)
        if content_type is not None:
            self.content_type = content_type

    @property
    def size_hint(self) -> int:
        return len(self.data)

    def open(self) -> ChunkProducer:
        return _BufferProducer(self.data)


class StreamBody(Body):
    """Payload produced lazily by an iterator.

    ``source`` is either an iterable of chunks, consumed once, or a zero-argument
    callable returning a fresh iterable on every call. Only the callable form is
    replayable.
    """

    def __init__(
        self,
        source: Union[ChunkSource, Callable[[], ChunkSource]],
        *,
        length: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> None:
        if length is not None and length < 0:
            raise BuilderError(f"Stream length must be non-negative, got {length}")
        self._factory: Optional[Callable[[], ChunkSource]] = None
        self._source: Optional[ChunkSource] = None
        if callable(source) and not hasattr(source, "__aiter__") and not hasattr(source, "__iter__"):
            self._factory = source
        else:
            self._source = source  # type: ignore[assignment]
        self._length = length
        self._opened = False
        if content_type is not None:
            self.content_type = content_type

    @property
    def size_hint(self) -> Optional[int]:
        return self._length

    @property
    def replayable(self) -> bool:
        return self._factory is not None

    def open(self) -> ChunkProducer:
        if self._factory is not None:
            source = self._factory()
            if inspect.isawaitable(source):
                raise TypeError("stream factory must return an iterable, not an awaitable")
            return _IteratorProducer(source, self._length)
        if self._opened:
            raise BodyNotReplayable("Stream body was already consumed and has no replayable source")
        self._opened = True
        return _IteratorProducer(self._source, self._length)  # type: ignore[arg-type]


class FileBody(Body):
    """Payload read from a local file; the size is taken when the body is built."""

    def __init__(self, path: Union[str, os.PathLike], content_type: Optional[str] = None) -> None:
        self.path = Path(path)
        try:
            stat = self.path.stat()
        except OSError as exc:
            raise BodyError(f"Cannot upload {self.path}: {exc}") from exc
        if not self.path.is_file():
            raise BodyError(f"Cannot upload {self.path}: not a regular file")
        self._size = stat.st_size
        self.content_type = content_type or _guess_type(self.path.name)

    @property
    def size_hint(self) -> int:
        return self._size

    def open(self) -> ChunkProducer:
        return _FileProducer(self.path)


class FormBody(BytesBody):
    """``application/x-www-form-urlencoded`` payload.

    Keys and values are percent-encoded with spaces as ``+`` and pairs joined
    with ``&``/``=``, so ``urllib.parse.parse_qsl`` reproduces the input.
    """

    content_type = "application/x-www-form-urlencoded"

    def __init__(self, pairs: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> None:
        items = list(pairs.items()) if isinstance(pairs, Mapping) else list(pairs)
        try:
            encoded = urlencode(items)
        except (TypeError, ValueError) as exc:
            raise EncodingFailed(f"Failed to url-encode form: {exc}") from exc
        self.pairs: List[Tuple[str, Any]] = items
        super().__init__(encoded.encode("ascii"))


def _json_default(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonBody(BytesBody):
    """Structured payload serialised as UTF-8 JSON."""

    content_type = "application/json"

    def __init__(self, value: Any) -> None:
        try:
            encoded = json.dumps(value, default=_json_default, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise EncodingFailed(f"Failed to serialise JSON body: {exc}") from exc
        self.value = value
        super().__init__(encoded.encode("utf-8"))


# ============================================================================
# Multipart
# ============================================================================


def _guess_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def _escape_param(value: str) -> str:
    # WHATWG multipart/form-data escaping for quoted names
    return value.replace('"', "%22").replace("\r", "%0D").replace("\n", "%0A")


@dataclasses.dataclass(frozen=True)
class Part:
    """One field of a ``multipart/form-data`` body."""

    name: str
    body: Body
    filename: Optional[str] = None
    content_type: Optional[str] = None

    @classmethod
    def text(cls, name: str, value: str) -> "Part":
        return cls(name=name, body=BytesBody(value.encode("utf-8")))

    @classmethod
    def data(
        cls,
        name: str,
        data: bytes,
        *,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> "Part":
        if content_type is None and filename is not None:
            content_type = _guess_type(filename)
        return cls(name=name, body=BytesBody(data), filename=filename, content_type=content_type)

    @classmethod
    def file(
        cls,
        name: str,
        path: Union[str, os.PathLike],
        *,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> "Part":
        body = FileBody(path, content_type=content_type)
        return cls(
            name=name,
            body=body,
            filename=filename if filename is not None else body.path.name,
            content_type=body.content_type,
        )

    def header_block(self, boundary: str) -> bytes:
        disposition = f'form-data; name="{_escape_param(self.name)}"'
        if self.filename is not None:
            disposition += f'; filename="{_escape_param(self.filename)}"'
        lines = [f"--{boundary}", f"Content-Disposition: {disposition}"]
        content_type = self.content_type or self.body.content_type
        if content_type is None and self.filename is not None:
            content_type = _guess_type(self.filename)
        if content_type:
            lines.append(f"Content-Type: {content_type}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


class MultipartBody(Body):
    """``multipart/form-data`` payload (RFC 7578).

    Layout per part: delimiter line, ``Content-Disposition``, optional
    ``Content-Type``, blank line, raw bytes, CRLF. The body ends with the
    closing delimiter ``--boundary--`` and CRLF.
    """

    def __init__(self, parts: Iterable[Part], boundary: Optional[str] = None) -> None:
        self.parts: Tuple[Part, ...] = tuple(parts)
        if boundary is None:
            boundary = self._generate_boundary()
        elif not (1 <= len(boundary) <= 70) or not boundary.isascii() or boundary.endswith(" "):
            raise EncodingFailed(f"Invalid multipart boundary {boundary!r}")
        elif self._boundary_collides(boundary):
            raise EncodingFailed(f"Multipart boundary {boundary!r} occurs in part content")
        self.boundary = boundary
        self.content_type = f"multipart/form-data; boundary={boundary}"

    def _boundary_collides(self, boundary: str) -> bool:
        token = boundary.encode("ascii")
        return any(
            isinstance(part.body, BytesBody) and token in part.body.data for part in self.parts
        )

    def _generate_boundary(self) -> str:
        while True:
            candidate = f"reqflow-{secrets.token_hex(16)}"
            if not self._boundary_collides(candidate):
                return candidate

    def _segments(self) -> List[Union[bytes, Body]]:
        segments: List[Union[bytes, Body]] = []
        for part in self.parts:
            segments.append(part.header_block(self.boundary))
            segments.append(part.body)
            segments.append(b"\r\n")
        if self.parts:
            segments.append(f"--{self.boundary}--\r\n".encode("ascii"))
        return segments

    @property
    def size_hint(self) -> Optional[int]:
        total = 0
        for segment in self._segments():
            if isinstance(segment, bytes):
                total += len(segment)
                continue
            size = segment.size_hint
            if size is None:
                return None
            total += size
        return total

    @property
    def replayable(self) -> bool:
        return all(part.body.replayable for part in self.parts)

    @property
    def is_empty(self) -> bool:
        return not self.parts

    def open(self) -> ChunkProducer:
        return _SegmentProducer(self._segments())
