"""Network subsystem: connector strategies, redirect policy, and the client.

This package provides the request execution pipeline on top of:
- HTTPX: HTTP/1.1 and HTTP/2 transport with connection pooling
- certifi: default certificate trust store for TLS

Modules:
- connector: scheme-selected Plain/TLS strategies over an HTTPX transport
- redirect: redirect state machine with method/body rewriting
- client: ``Client.execute`` and the lazily-built shared client

Example:
    >>> from ReqFlow.network import get_http_client
    >>> from ReqFlow.request import RequestBuilder
    >>>
    >>> client = get_http_client()
    >>> response = await client.execute(RequestBuilder.get(url).empty())  # doctest: +SKIP
"""

from ReqFlow.network.connector import (
    Connector,
    ConnectStrategy,
    HttpxTransport,
    PlainStrategy,
    RawResponse,
    TlsStrategy,
    TrustStore,
    map_transport_error,
)
from ReqFlow.network.redirect import (
    RedirectDecision,
    RedirectPolicy,
    RedirectState,
    format_audit_trail,
)
from ReqFlow.network.client import (
    Client,
    close_http_client,
    get_http_client,
    reset_http_client,
)

__all__ = [
    # Connector
    "Connector",
    "ConnectStrategy",
    "HttpxTransport",
    "PlainStrategy",
    "RawResponse",
    "TlsStrategy",
    "TrustStore",
    "map_transport_error",
    # Redirects
    "RedirectDecision",
    "RedirectPolicy",
    "RedirectState",
    "format_audit_trail",
    # Client lifecycle
    "Client",
    "get_http_client",
    "close_http_client",
    "reset_http_client",
]
