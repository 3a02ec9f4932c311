"""Asynchronous HTTP client: request building, redirect following, response decoding.

Typical use::

    from ReqFlow import Client, RequestBuilder

    async with Client() as client:
        response = await client.execute(
            RequestBuilder.post("https://api.example.org/items").json({"id": 1})
        )
        payload = await response.to_structured()
"""

from __future__ import annotations

import logging

from ReqFlow._version import __version__
from ReqFlow.body import (
    Body,
    BytesBody,
    EmptyBody,
    FileBody,
    FormBody,
    JsonBody,
    MultipartBody,
    Part,
    StreamBody,
)
from ReqFlow.errors import (
    AlreadyConsumed,
    BodyConflict,
    BodyError,
    BodyNotReplayable,
    BuilderError,
    CharsetDecodeFailed,
    ConnectError,
    ConnectionRefused,
    DecodeError,
    DecompressionFailed,
    EncodingFailed,
    InvalidHeader,
    InvalidLocation,
    InvalidUri,
    RedirectError,
    ReqFlowError,
    SizeLimitExceeded,
    StorageWriteFailed,
    Timeout,
    TlsHandshakeFailed,
    TooManyRedirects,
    TransportError,
    UnsupportedCompression,
    UnsupportedScheme,
)
from ReqFlow.headers import HeaderMap
from ReqFlow.network import Client, close_http_client, get_http_client, reset_http_client
from ReqFlow.request import Request, RequestBuilder
from ReqFlow.response import Response
from ReqFlow.settings import ClientSettings, RequestOptions, TlsSettings
from ReqFlow.sink import FileSink, LocalStorage, LoggingProgress

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Requests
    "Request",
    "RequestBuilder",
    "HeaderMap",
    "Body",
    "BytesBody",
    "EmptyBody",
    "FileBody",
    "FormBody",
    "JsonBody",
    "MultipartBody",
    "Part",
    "StreamBody",
    # Execution
    "Client",
    "ClientSettings",
    "RequestOptions",
    "TlsSettings",
    "Response",
    "get_http_client",
    "close_http_client",
    "reset_http_client",
    # Sinks
    "FileSink",
    "LocalStorage",
    "LoggingProgress",
    # Errors
    "ReqFlowError",
    "BuilderError",
    "InvalidUri",
    "InvalidHeader",
    "UnsupportedScheme",
    "BodyConflict",
    "ConnectError",
    "TlsHandshakeFailed",
    "ConnectionRefused",
    "TransportError",
    "RedirectError",
    "TooManyRedirects",
    "InvalidLocation",
    "BodyNotReplayable",
    "BodyError",
    "EncodingFailed",
    "SizeLimitExceeded",
    "AlreadyConsumed",
    "StorageWriteFailed",
    "DecodeError",
    "UnsupportedCompression",
    "DecompressionFailed",
    "CharsetDecodeFailed",
    "Timeout",
]
