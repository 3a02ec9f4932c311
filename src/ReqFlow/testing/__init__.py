"""Testing utilities for exercising the client without a network.

Provides scripted responses served through ``httpx.MockTransport`` and a
context manager that yields a :class:`~ReqFlow.network.client.Client` wired to
them, recording every request that reaches the transport.
"""

from __future__ import annotations

import contextlib
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import httpx

from ReqFlow.network.client import Client
from ReqFlow.settings import ClientSettings

__all__ = [
    "canned_response",
    "ResponseSpec",
    "RequestRecord",
    "MockResponses",
    "mock_client",
]


def canned_response(
    status: int = 200,
    *,
    headers: Optional[Union[Mapping[str, str], Iterable[Tuple[str, str]]]] = None,
    content: Union[bytes, str] = b"",
) -> httpx.Response:
    """Build an unread ``httpx.Response`` whose body is served as raw bytes.

    ``httpx.Response(content=...)`` reads and decodes its body on construction,
    which hides the wire bytes from ``aiter_raw``; a pre-built stream does not.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    wire_headers = httpx.Headers(headers or {})
    wire_headers.setdefault("Content-Length", str(len(content)))
    return httpx.Response(status, headers=wire_headers, stream=httpx.ByteStream(content))


@dataclass
class ResponseSpec:
    """HTTP response definition served by :class:`MockResponses`."""

    status: int = 200
    body: Union[bytes, str, Any] = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    stream: Optional[Iterable[bytes]] = None

    def serialise_body(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")

    def to_httpx(self) -> httpx.Response:
        if self.stream is not None:
            return httpx.Response(
                self.status, headers=dict(self.headers), stream=_ChunkStream(list(self.stream))
            )
        return canned_response(self.status, headers=self.headers, content=self.serialise_body())


class _ChunkStream(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]) -> None:
        self._chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk


@dataclass
class RequestRecord:
    """Captured HTTP request as it reached the transport."""

    method: str
    url: str
    headers: Dict[str, str]
    body: bytes


class MockResponses:
    """Serves scripted responses per URL, or from one ordered queue."""

    def __init__(self) -> None:
        self._by_url: Dict[str, Deque[ResponseSpec]] = {}
        self._queue: Deque[ResponseSpec] = deque()
        self.requests: List[RequestRecord] = []

    def add(self, url: Optional[str], spec: Optional[ResponseSpec] = None, **kwargs: Any) -> "MockResponses":
        """Queue ``spec`` for ``url``; ``url=None`` queues it for any URL."""
        spec = spec or ResponseSpec(**kwargs)
        if url is None:
            self._queue.append(spec)
        else:
            self._by_url.setdefault(url, deque()).append(spec)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            RequestRecord(
                method=request.method,
                url=str(request.url),
                headers=dict(request.headers),
                body=request.content,
            )
        )
        pending = self._by_url.get(str(request.url))
        if pending:
            return pending.popleft().to_httpx()
        if self._queue:
            return self._queue.popleft().to_httpx()
        return canned_response(404, content=b"no scripted response")


@contextlib.asynccontextmanager
async def mock_client(
    handler: Callable[[httpx.Request], httpx.Response],
    settings: Optional[ClientSettings] = None,
    **overrides: Any,
) -> AsyncIterator[Client]:
    """Yield a :class:`Client` whose transport is ``httpx.MockTransport(handler)``."""
    if settings is None:
        settings = ClientSettings(**overrides)
    elif overrides:
        settings = settings.model_copy(update=overrides)
    client = Client(settings, transport=httpx.MockTransport(handler))
    try:
        yield client
    finally:
        await client.aclose()
