# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.network.connector",
#   "purpose": "Scheme-selected transport strategies over HTTPX.",
#   "sections": [
#     {"id": "rawresponse", "name": "RawResponse", "anchor": "class-rawresponse", "kind": "class"},
#     {"id": "truststore", "name": "TrustStore", "anchor": "class-truststore", "kind": "class"},
#     {"id": "httpxtransport", "name": "HttpxTransport", "anchor": "class-httpxtransport", "kind": "class"},
#     {"id": "plainstrategy", "name": "PlainStrategy", "anchor": "class-plainstrategy", "kind": "class"},
#     {"id": "tlsstrategy", "name": "TlsStrategy", "anchor": "class-tlsstrategy", "kind": "class"},
#     {"id": "connector", "name": "Connector", "anchor": "class-connector", "kind": "class"},
#     {"id": "map-transport-error", "name": "map_transport_error", "anchor": "function-map-transport-error", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Scheme-selected transport strategies over HTTPX.

The connector never frames HTTP itself. It picks a strategy by URI scheme
(``http`` → :class:`PlainStrategy`, ``https`` → :class:`TlsStrategy` bound to a
:class:`TrustStore`) and hands the request to an :class:`HttpxTransport`, which
owns an ``httpx.AsyncClient`` with redirects disabled. Responses come back as
:class:`RawResponse` objects whose bodies are still encoded; decoding is the
post-processor's job.

HTTPX failures are translated at this boundary so callers only ever see the
:mod:`ReqFlow.errors` taxonomy:

- ``httpx.TimeoutException`` → :class:`~ReqFlow.errors.Timeout`
- ``httpx.ConnectError`` → :class:`~ReqFlow.errors.TlsHandshakeFailed` when an
  SSL error caused it, else :class:`~ReqFlow.errors.ConnectionRefused`
- any other ``httpx.TransportError`` → :class:`~ReqFlow.errors.TransportError`
"""

from __future__ import annotations

import logging
import ssl
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Union

import certifi
import httpx

from ReqFlow.body import Body, BytesBody
from ReqFlow.errors import (
    AlreadyConsumed,
    ConnectionRefused,
    ReqFlowError,
    Timeout,
    TlsHandshakeFailed,
    TransportError,
    UnsupportedScheme,
)
from ReqFlow.headers import HeaderMap
from ReqFlow.request import Request
from ReqFlow.settings import ClientSettings, TlsSettings

logger = logging.getLogger(__name__)

__all__ = [
    "RawResponse",
    "TrustStore",
    "HttpxTransport",
    "ConnectStrategy",
    "PlainStrategy",
    "TlsStrategy",
    "Connector",
    "map_transport_error",
]


# ============================================================================
# Error translation
# ============================================================================


def _caused_by_ssl(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    text = str(exc).upper()
    return "SSL" in text or "CERTIFICATE" in text or "TLS" in text


def map_transport_error(exc: httpx.HTTPError, url: Optional[str] = None) -> ReqFlowError:
    """Translate an HTTPX exception into the client's error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return Timeout(f"Timed out talking to {url}: {exc}" if url else f"Timed out: {exc}")
    if isinstance(exc, httpx.ConnectError):
        if _caused_by_ssl(exc):
            return TlsHandshakeFailed(f"TLS handshake with {url} failed: {exc}", url=url)
        return ConnectionRefused(f"Could not connect to {url}: {exc}", url=url)
    return TransportError(f"{exc.__class__.__name__}: {exc}", url=url)


# ============================================================================
# Raw response
# ============================================================================


class RawResponse:
    """Undecoded transport response: status, wire headers, and a raw byte stream."""

    def __init__(self, response: httpx.Response, request: Request) -> None:
        self._response = response
        self.request = request
        self.status = response.status_code
        self.headers = HeaderMap.from_wire(response.headers).frozen()
        self.url = request.url
        self.http_version = response.http_version
        self.extensions: Dict[str, Any] = dict(response.extensions)
        self._closed = False

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        """Yield the body bytes exactly as received."""
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        except httpx.StreamError as exc:
            raise AlreadyConsumed(f"Body of {self.url} is no longer readable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, str(self.url)) from exc

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()

    def __repr__(self) -> str:
        return f"<RawResponse [{self.status}] {self.url}>"


# ============================================================================
# Trust store & transport
# ============================================================================


class TrustStore:
    """Certificate trust configuration resolved into an ``ssl.SSLContext``."""

    def __init__(self, verify: bool = True, ca_bundle: Optional[Union[str, Path]] = None) -> None:
        self.verify = verify
        self.ca_bundle = Path(ca_bundle) if ca_bundle is not None else None

    @classmethod
    def from_settings(cls, tls: TlsSettings) -> "TrustStore":
        return cls(verify=tls.verify, ca_bundle=tls.ca_bundle)

    def ssl_context(self) -> ssl.SSLContext:
        """Create SSL context with secure defaults.

        Uses the configured CA bundle, else the certifi store. Verification can
        only be disabled explicitly and logs a warning when it is.
        """
        if not self.verify:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            logger.warning("TLS verification DISABLED (development only!)")
            return ctx

        cafile = str(self.ca_bundle) if self.ca_bundle is not None else certifi.where()
        ctx = ssl.create_default_context(cafile=cafile)
        ctx.check_hostname = True
        ctx.verify_mode = ssl.CERT_REQUIRED
        return ctx

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(verify={self.verify}, ca_bundle={self.ca_bundle})"


def _request_content(body: Body) -> Any:
    if body.is_empty:
        return None
    if isinstance(body, BytesBody):
        return body.data
    return body.__aiter__()


class HttpxTransport:
    """Sends requests through an ``httpx.AsyncClient`` with redirects disabled."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        verify: Union[bool, ssl.SSLContext] = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            transport=transport,
            verify=verify,
            http2=settings.http2,
            follow_redirects=False,
            limits=httpx.Limits(
                max_connections=settings.max_connections,
                max_keepalive_connections=settings.max_keepalive_connections,
                keepalive_expiry=settings.keepalive_expiry,
            ),
            timeout=self.timeout(),
        )

    def timeout(self, connect: Optional[float] = None) -> httpx.Timeout:
        return httpx.Timeout(
            connect=connect if connect is not None else self.settings.connect_timeout,
            read=self.settings.read_timeout,
            write=self.settings.write_timeout,
            pool=self.settings.pool_timeout,
        )

    async def send(self, request: Request, *, connect_timeout: Optional[float] = None) -> RawResponse:
        """Send ``request`` and return the response with its body still unread."""
        # httpx.Request does not merge client default headers, so the wire
        # headers are exactly the ones on ``request``.
        outgoing = httpx.Request(
            request.method,
            request.url,
            headers=request.headers.as_httpx(),
            content=_request_content(request.body),
            extensions={"timeout": self.timeout(connect_timeout).as_dict()},
        )
        try:
            response = await self._client.send(outgoing, stream=True)
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, str(request.url)) from exc
        return RawResponse(response, request)

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        await self._client.aclose()


# ============================================================================
# Strategies
# ============================================================================


class ConnectStrategy(ABC):
    """Transport channel for one URI scheme."""

    scheme: str = ""

    def __init__(self, transport: HttpxTransport) -> None:
        self.transport = transport

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """Return log context describing the channel."""

    async def send(self, request: Request, *, connect_timeout: Optional[float] = None) -> RawResponse:
        return await self.transport.send(request, connect_timeout=connect_timeout)

    async def aclose(self) -> None:
        if not self.transport.is_closed:
            await self.transport.aclose()


class PlainStrategy(ConnectStrategy):
    """Cleartext ``http`` channel."""

    scheme = "http"

    def describe(self) -> Dict[str, Any]:
        return {"scheme": self.scheme}


class TlsStrategy(ConnectStrategy):
    """``https`` channel verified against a :class:`TrustStore`."""

    scheme = "https"

    def __init__(self, transport: HttpxTransport, trust: TrustStore) -> None:
        super().__init__(transport)
        self.trust = trust

    def describe(self) -> Dict[str, Any]:
        return {"scheme": self.scheme, "verify": self.trust.verify}


class Connector:
    """Selects a strategy by scheme and delegates the send to it."""

    def __init__(self, plain: ConnectStrategy, tls: ConnectStrategy) -> None:
        self._strategies: Dict[str, ConnectStrategy] = {"http": plain, "https": tls}

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "Connector":
        """Build plain and TLS strategies from ``settings``.

        When ``transport`` is given (for example ``httpx.MockTransport``) both
        strategies share one client over it and no SSL context is created.
        """
        trust = TrustStore.from_settings(settings.tls)
        if transport is not None:
            shared = HttpxTransport(settings, verify=trust.verify, transport=transport)
            return cls(PlainStrategy(shared), TlsStrategy(shared, trust))
        plain = PlainStrategy(HttpxTransport(settings, verify=False))
        tls = TlsStrategy(HttpxTransport(settings, verify=trust.ssl_context()), trust)
        return cls(plain, tls)

    def strategy_for(self, scheme: str) -> ConnectStrategy:
        try:
            return self._strategies[scheme.lower()]
        except KeyError:
            raise UnsupportedScheme(scheme) from None

    async def send(self, request: Request, *, connect_timeout: Optional[float] = None) -> RawResponse:
        """Send ``request`` over the strategy for its scheme.

        Raises:
            UnsupportedScheme: for schemes other than ``http``/``https``.
            ConnectError: if the connection or TLS handshake fails.
            TransportError: for other lower-layer I/O failures.
            Timeout: if a transport deadline expires.
        """
        strategy = self.strategy_for(request.url.scheme)
        logger.debug(
            "Dispatching request",
            extra={"method": request.method, "url": str(request.url), **strategy.describe()},
        )
        return await strategy.send(request, connect_timeout=connect_timeout)

    async def aclose(self) -> None:
        closed = set()
        for strategy in self._strategies.values():
            if id(strategy.transport) in closed:
                continue
            closed.add(id(strategy.transport))
            await strategy.aclose()
