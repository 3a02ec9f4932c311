# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.request",
#   "purpose": "Immutable HTTP request model and its validating builder.",
#   "sections": [
#     {"id": "request", "name": "Request", "anchor": "class-request", "kind": "class"},
#     {"id": "requestbuilder", "name": "RequestBuilder", "anchor": "class-requestbuilder", "kind": "class"},
#     {"id": "parse-target", "name": "parse_target", "anchor": "function-parse-target", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Immutable HTTP request model and its validating builder.

A :class:`RequestBuilder` collects method, target and headers and is finalised
by exactly one terminal body setter. Every invalid input surfaces as a
:class:`~ReqFlow.errors.BuilderError` before any I/O happens.

Example:
    >>> request = RequestBuilder.post("https://api.example.org/items").json({"id": 1})
    >>> request.method, request.headers["Content-Type"]
    ('POST', 'application/json')
"""

from __future__ import annotations

import base64
import dataclasses
import os
import re
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError

from ReqFlow import policy
from ReqFlow.body import (
    Body,
    BytesBody,
    ChunkSource,
    EmptyBody,
    FileBody,
    FormBody,
    JsonBody,
    MultipartBody,
    Part,
    StreamBody,
)
from ReqFlow.errors import BodyConflict, BuilderError, InvalidHeader, InvalidUri, UnsupportedScheme
from ReqFlow.headers import ContentDisposition, EntityTag, HeaderMap, format_http_date
from ReqFlow.settings import RequestOptions

__all__ = [
    "Request",
    "RequestBuilder",
    "parse_target",
    "SUPPORTED_SCHEMES",
]

SUPPORTED_SCHEMES = frozenset({"http", "https"})

_METHOD_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def parse_target(target: Union[str, httpx.URL]) -> httpx.URL:
    """Validate ``target`` as an absolute http(s) URI.

    Raises:
        InvalidUri: if the target cannot be parsed or lacks a host.
        UnsupportedScheme: if the scheme is not ``http`` or ``https``.
    """
    raw = str(target)
    try:
        url = target if isinstance(target, httpx.URL) else httpx.URL(raw)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise InvalidUri(raw, str(exc)) from exc
    if not url.scheme:
        raise InvalidUri(raw, "URI must be absolute")
    if url.scheme not in SUPPORTED_SCHEMES:
        raise UnsupportedScheme(url.scheme)
    if not url.host:
        raise InvalidUri(raw, "URI has no host")
    return url


@dataclasses.dataclass(frozen=True)
class Request:
    """An immutable, fully validated request.

    Redirect handling derives new requests with :meth:`evolve`; the original is
    never mutated. ``headers`` is a read-only :class:`HeaderMap` and
    ``extensions`` a read-only mapping.
    """

    method: str
    url: httpx.URL
    headers: HeaderMap
    body: Body
    options: RequestOptions = dataclasses.field(default_factory=RequestOptions)
    extensions: Mapping[str, Any] = dataclasses.field(default_factory=lambda: MappingProxyType({}))

    def evolve(self, **changes: Any) -> "Request":
        """Return a copy with ``changes`` applied; headers are re-frozen."""
        headers = changes.get("headers")
        if headers is not None and not isinstance(headers, HeaderMap):
            changes["headers"] = HeaderMap(headers).frozen()
        elif headers is not None:
            changes["headers"] = headers.frozen()
        return dataclasses.replace(self, **changes)

    def with_default_headers(self, defaults: Mapping[str, str]) -> "Request":
        """Return a copy where ``defaults`` fill headers the request does not set."""
        missing = {name: value for name, value in defaults.items() if name not in self.headers}
        if not missing:
            return self
        headers = self.headers.copy()
        for name, value in missing.items():
            headers[name] = value
        return self.evolve(headers=headers)

    @property
    def host(self) -> str:
        return self.url.host

    def __repr__(self) -> str:
        return f"<Request [{self.method} {self.url}]>"


def _apply_body_headers(method: str, headers: HeaderMap, body: Body) -> None:
    """Keep Content-Length/Transfer-Encoding consistent with ``body``."""
    if body.content_type and "content-type" not in headers:
        headers["Content-Type"] = body.content_type
    if body.is_empty:
        headers.pop("transfer-encoding", None)
        if method in policy.EMPTY_BODY_LENGTH_METHODS:
            headers["Content-Length"] = "0"
        else:
            headers.pop("content-length", None)
        return
    size = body.size_hint
    if size is None:
        headers.pop("content-length", None)
        headers["Transfer-Encoding"] = "chunked"
    else:
        headers.pop("transfer-encoding", None)
        headers["Content-Length"] = str(size)


class RequestBuilder:
    """Fluent, validating constructor for :class:`Request`.

    Header setters raise :class:`InvalidHeader` immediately. The target is
    validated when a terminal body setter finalises the builder; a second
    terminal call raises :class:`BodyConflict`.
    """

    def __init__(self, method: str, target: Union[str, httpx.URL]) -> None:
        if not isinstance(method, str) or not _METHOD_RE.match(method):
            raise InvalidHeader(":method", f"invalid method {method!r}")
        self.method = method.upper()
        self.target = target
        self._headers = HeaderMap()
        self._query: Optional[str] = None
        self._cookies: Dict[str, str] = {}
        self._options: Dict[str, Any] = {}
        self._extensions: Dict[str, Any] = {}
        self._finalized = False

    # -- method constructors -------------------------------------------------

    @classmethod
    def get(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("GET", target)

    @classmethod
    def head(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("HEAD", target)

    @classmethod
    def post(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("POST", target)

    @classmethod
    def put(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("PUT", target)

    @classmethod
    def delete(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("DELETE", target)

    @classmethod
    def patch(cls, target: Union[str, httpx.URL]) -> "RequestBuilder":
        return cls("PATCH", target)

    # -- headers ------------------------------------------------------------

    def header(self, name: str, value: Any) -> "RequestBuilder":
        """Set ``name`` to ``value``.

        An earlier value is replaced, except for repeatable fields such as
        ``Set-Cookie``, where each call appends another line.
        """
        self._headers.add(name, str(value))
        return self

    def headers(self, headers: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> "RequestBuilder":
        pairs = headers.items() if isinstance(headers, Mapping) else headers
        for name, value in pairs:
            self.header(name, value)
        return self

    def header_if_absent(self, name: str, value: Any) -> "RequestBuilder":
        if name not in self._headers:
            self.header(name, value)
        return self

    def if_some(self, value: Optional[Any], callback: Callable[[Any, "RequestBuilder"], "RequestBuilder"]) -> "RequestBuilder":
        """Invoke ``callback(value, self)`` only when ``value`` is not ``None``."""
        if value is None:
            return self
        return callback(value, self)

    def basic_auth(self, username: str, password: Optional[str] = None) -> "RequestBuilder":
        credentials = f"{username}:{password if password is not None else ''}"
        token = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return self.header("Authorization", f"Basic {token}")

    def bearer_auth(self, token: str) -> "RequestBuilder":
        return self.header("Authorization", f"Bearer {token}")

    def accept_encoding(self, encoding: str) -> "RequestBuilder":
        return self.header("Accept-Encoding", encoding)

    def content_disposition(self, disposition: Union[ContentDisposition, str]) -> "RequestBuilder":
        return self.header("Content-Disposition", str(disposition))

    def _append_etag(self, name: str, etag: Union[EntityTag, str]) -> "RequestBuilder":
        rendered = str(etag)
        existing = self._headers.get(name)
        return self.header(name, f"{existing}, {rendered}" if existing else rendered)

    def if_none_match(self, etag: Union[EntityTag, str]) -> "RequestBuilder":
        """Add ``etag`` to ``If-None-Match``, appending to earlier tags."""
        return self._append_etag("If-None-Match", etag)

    def if_match(self, etag: Union[EntityTag, str]) -> "RequestBuilder":
        """Add ``etag`` to ``If-Match``, appending to earlier tags."""
        return self._append_etag("If-Match", etag)

    def if_modified_since(self, when: datetime) -> "RequestBuilder":
        return self.header("If-Modified-Since", format_http_date(when))

    def if_unmodified_since(self, when: datetime) -> "RequestBuilder":
        return self.header("If-Unmodified-Since", format_http_date(when))

    def cookie(self, name: str, value: str) -> "RequestBuilder":
        """Queue a cookie; all queued cookies form one ``Cookie`` header."""
        self._cookies[name] = value
        return self

    def cookies(self, cookies: Mapping[str, str]) -> "RequestBuilder":
        for name, value in cookies.items():
            self.cookie(name, value)
        return self

    def query(self, params: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> "RequestBuilder":
        """Replace the target's query string with ``params``."""
        items = list(params.items()) if isinstance(params, Mapping) else list(params)
        self._query = urlencode(items, doseq=True)
        return self

    # -- per-request options -------------------------------------------------

    def timeout(self, request: Optional[float] = None, *, connect: Optional[float] = None) -> "RequestBuilder":
        if request is not None:
            self._options["request_timeout"] = request
        if connect is not None:
            self._options["connect_timeout"] = connect
        return self

    def max_redirects(self, limit: int) -> "RequestBuilder":
        self._options["max_redirects"] = limit
        return self

    def follow_redirects(self, follow: bool = True) -> "RequestBuilder":
        self._options["follow_redirects"] = follow
        return self

    def extension(self, key: str, value: Any) -> "RequestBuilder":
        """Attach request-scoped data carried through to the response."""
        self._extensions[key] = value
        return self

    # -- terminal body setters ----------------------------------------------

    def body(self, body: Body) -> Request:
        """Finalise with an explicit :class:`~ReqFlow.body.Body`."""
        if self._finalized:
            raise BodyConflict("Request body was already set; builders finalise exactly once")
        url = parse_target(self.target)
        if self._query is not None:
            url = url.copy_with(query=self._query.encode("ascii"))

        try:
            options = RequestOptions(**self._options)
        except ValidationError as exc:
            raise BuilderError(f"Invalid request options: {exc}") from exc
        headers = self._headers.copy()
        if self._cookies:
            headers["Cookie"] = "; ".join(
                f"{quote(name, safe='')}={quote(value, safe='')}"
                for name, value in self._cookies.items()
            )
        _apply_body_headers(self.method, headers, body)
        self._finalized = True
        return Request(
            method=self.method,
            url=url,
            headers=headers.frozen(),
            body=body,
            options=options,
            extensions=MappingProxyType(dict(self._extensions)),
        )

    def empty(self) -> Request:
        return self.body(EmptyBody())

    def bytes(self, data: Union[bytes, bytearray, memoryview], content_type: Optional[str] = None) -> Request:
        return self.body(BytesBody(data, content_type=content_type))

    def text(self, text: str, content_type: str = "text/plain; charset=utf-8") -> Request:
        return self.body(BytesBody(text.encode("utf-8"), content_type=content_type))

    def json(self, value: Any) -> Request:
        self._check_open()
        return self.body(JsonBody(value))

    def form(self, pairs: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> Request:
        self._check_open()
        return self.body(FormBody(pairs))

    def multipart(self, parts: Iterable[Part], boundary: Optional[str] = None) -> Request:
        self._check_open()
        return self.body(MultipartBody(parts, boundary=boundary))

    def stream(
        self,
        producer: Union[ChunkSource, Callable[[], ChunkSource]],
        *,
        length: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> Request:
        return self.body(StreamBody(producer, length=length, content_type=content_type))

    def file(self, path: Union[str, os.PathLike], content_type: Optional[str] = None) -> Request:
        """Upload the file at ``path`` as the raw request body."""
        self._check_open()
        return self.body(FileBody(path, content_type=content_type))

    def _check_open(self) -> None:
        if self._finalized:
            raise BodyConflict("Request body was already set; builders finalise exactly once")
