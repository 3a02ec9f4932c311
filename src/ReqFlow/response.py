# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.response",
#   "purpose": "Final response with single-use consumption terminals and header accessors.",
#   "sections": [
#     {"id": "response", "name": "Response", "anchor": "class-response", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Final response with single-use consumption terminals and header accessors.

The body of a :class:`Response` can be consumed exactly once, through one of
:meth:`Response.to_bytes`, :meth:`Response.raw_bytes`, :meth:`Response.to_text`,
:meth:`Response.to_structured`, :meth:`Response.to_file`,
:meth:`Response.aiter_bytes` or :meth:`Response.aiter_raw`. A second attempt
raises :class:`~ReqFlow.errors.AlreadyConsumed`.

Decoding failures only surface from the decoded terminals. An unsupported
``Content-Encoding`` is detected before the body is touched, so
:meth:`Response.raw_bytes` still works afterwards; charset failures carry the
bytes on :attr:`~ReqFlow.errors.CharsetDecodeFailed.raw`.

Header helpers are computed on demand from the read-only header map.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
)

from pydantic import TypeAdapter, ValidationError

from ReqFlow.decoding import Decoder, ResponsePostProcessor
from ReqFlow.errors import AlreadyConsumed, DecodeError, DecompressionFailed, SizeLimitExceeded
from ReqFlow.headers import (
    ContentDisposition,
    ContentType,
    Cookie,
    EntityTag,
    HeaderMap,
    parse_content_disposition,
    parse_content_encoding,
    parse_content_type,
    parse_etag,
    parse_http_date,
    parse_set_cookie,
)
from ReqFlow.request import Request
from ReqFlow.sink import FileSink, ProgressNotifier, Storage

if TYPE_CHECKING:
    from ReqFlow.network.connector import RawResponse

logger = logging.getLogger(__name__)

__all__ = ["Response"]


class Response:
    """Terminal response of one ``execute`` call."""

    def __init__(
        self,
        raw: RawResponse,
        *,
        request: Request,
        post_processor: Optional[ResponsePostProcessor] = None,
        max_body_bytes: int = 0,
        history: Sequence[Tuple[str, int]] = (),
        extensions: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._raw = raw
        self.request = request
        self.post_processor = post_processor or ResponsePostProcessor()
        self.max_body_bytes = max_body_bytes
        self.history: List[Tuple[str, int]] = list(history)
        self.extensions: Mapping[str, Any] = MappingProxyType(dict(extensions or {}))
        self._consumed = False

    # -- status line & headers ----------------------------------------------

    @property
    def status(self) -> int:
        return self._raw.status

    @property
    def headers(self) -> HeaderMap:
        return self._raw.headers

    @property
    def url(self):
        return self._raw.url

    @property
    def http_version(self) -> str:
        return self._raw.http_version

    @property
    def redirect_count(self) -> int:
        return len(self.history)

    @property
    def is_informational(self) -> bool:
        return 100 <= self.status < 200

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return 500 <= self.status < 600

    @property
    def is_error(self) -> bool:
        return self.status >= 400

    @property
    def is_consumed(self) -> bool:
        return self._consumed

    # -- header helpers -----------------------------------------------------

    def cookies(self) -> List[Cookie]:
        """``Set-Cookie`` records in header order; malformed lines are skipped."""
        cookies = []
        for line in self.headers.get_all("set-cookie"):
            cookie = parse_set_cookie(line)
            if cookie is None:
                logger.debug("Skipping malformed Set-Cookie", extra={"url": str(self.url)})
                continue
            cookies.append(cookie)
        return cookies

    def cookie_jar(self) -> Dict[str, Cookie]:
        """Cookies by name; a later ``Set-Cookie`` for the same name wins."""
        return {cookie.name: cookie for cookie in self.cookies()}

    def etag(self) -> Optional[EntityTag]:
        return parse_etag(self.headers.get("etag"))

    def last_modified(self) -> Optional[datetime]:
        return parse_http_date(self.headers.get("last-modified"))

    def content_type(self) -> Optional[ContentType]:
        return parse_content_type(self.headers.get("content-type"))

    def mime(self) -> Optional[str]:
        content_type = self.content_type()
        return content_type.mime if content_type is not None else None

    def charset(self) -> Optional[str]:
        content_type = self.content_type()
        return content_type.charset if content_type is not None else None

    def content_length(self) -> Optional[int]:
        value = self.headers.get("content-length")
        if value is None:
            return None
        try:
            length = int(value.split(",")[0].strip())
        except ValueError:
            return None
        return length if length >= 0 else None

    def content_encoding(self) -> List[str]:
        return parse_content_encoding(self.headers.get("content-encoding"))

    def content_disposition(self) -> Optional[ContentDisposition]:
        return parse_content_disposition(self.headers.get("content-disposition"))

    # -- consumption ----------------------------------------------------------

    def _claim(self) -> None:
        if self._consumed:
            raise AlreadyConsumed(f"Body of {self.url} was already consumed")
        self._consumed = True

    def _decoders(self) -> List[Decoder]:
        if self._consumed:
            raise AlreadyConsumed(f"Body of {self.url} was already consumed")
        return self.post_processor.decoders_for(self.headers)

    def _expected_total(self) -> Optional[int]:
        if self.post_processor.is_encoded(self.headers):
            return None
        return self.content_length()

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        """Yield the body exactly as received, without decompression."""
        self._claim()
        try:
            async for chunk in self._raw.aiter_raw():
                yield chunk
        finally:
            await self._raw.aclose()

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the decompressed body.

        Raises:
            UnsupportedCompression: before anything is consumed.
            DecompressionFailed: if the compressed data is corrupt.
        """
        decoders = self._decoders()
        self._claim()
        async for chunk in self._decoded(decoders):
            yield chunk

    async def _decoded(
        self, decoders: List[Decoder], received: Optional[bytearray] = None
    ) -> AsyncIterator[bytes]:
        async def raw_chunks() -> AsyncIterator[bytes]:
            async for chunk in self._raw.aiter_raw():
                if received is not None:
                    received.extend(chunk)
                yield chunk

        try:
            async for chunk in self.post_processor.decode_stream(
                self.headers, raw_chunks(), decoders=decoders
            ):
                yield chunk
        finally:
            await self._raw.aclose()

    async def _collect(
        self, chunks: AsyncIterator[bytes], on_progress: Optional[ProgressNotifier] = None
    ) -> bytes:
        buffer = bytearray()
        total = self._expected_total()
        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                if self.max_body_bytes and len(buffer) > self.max_body_bytes:
                    raise SizeLimitExceeded(self.max_body_bytes, partial=bytes(buffer))
                if on_progress is not None:
                    on_progress(len(buffer), total)
        finally:
            await self._raw.aclose()
        return bytes(buffer)

    async def to_bytes(self, on_progress: Optional[ProgressNotifier] = None) -> bytes:
        """Buffer the decoded body.

        Raises:
            AlreadyConsumed: on a second consumption.
            SizeLimitExceeded: when the body grows beyond ``max_body_bytes``.
            DecompressionFailed: with ``raw`` set to the bytes received so far.
        """
        decoders = self._decoders()
        self._claim()
        received = bytearray()
        try:
            return await self._collect(self._decoded(decoders, received), on_progress)
        except DecompressionFailed as exc:
            exc.raw = bytes(received)
            raise

    async def raw_bytes(self) -> bytes:
        """Buffer the body without decompression."""
        return await self._collect(self.aiter_raw())

    async def to_text(self, charset: Optional[str] = None, *, lossy: bool = False) -> str:
        """Decode the body to text.

        ``charset`` overrides the label from ``Content-Type``. Undecodable bytes
        raise :class:`~ReqFlow.errors.CharsetDecodeFailed` unless ``lossy``.
        """
        data = await self.to_bytes()
        return self.post_processor.decode_text(self.headers, data, charset=charset, lossy=lossy)

    async def to_structured(self, model: Optional[Union[Type[Any], Any]] = None) -> Any:
        """Parse a JSON body, validating it against ``model`` when given.

        Raises:
            DecodeError: if the body is not valid JSON or does not fit ``model``.
        """
        text = await self.to_text()
        if model is None:
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise DecodeError(f"Response body of {self.url} is not valid JSON: {exc}") from exc
        try:
            return TypeAdapter(model).validate_json(text)
        except ValidationError as exc:
            raise DecodeError(
                f"Response body of {self.url} does not match {model!r}: {exc}"
            ) from exc

    async def to_file(
        self,
        path: Union[str, os.PathLike],
        on_progress: Optional[ProgressNotifier] = None,
        *,
        storage: Optional[Storage] = None,
    ) -> int:
        """Stream the decoded body to ``path`` and return the bytes written.

        The destination is left partially written if the stream or storage
        fails; removing it is up to the caller.
        """
        decoders = self._decoders()
        self._claim()
        sink = FileSink(storage=storage, notifier=on_progress)
        try:
            return await sink.consume(
                self._decoded(decoders), path, total=self._expected_total()
            )
        finally:
            await self._raw.aclose()

    async def aclose(self) -> None:
        """Release the underlying connection; the body can no longer be read."""
        self._consumed = True
        await self._raw.aclose()

    async def __aenter__(self) -> "Response":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<Response [{self.status}] {self.url}>"
