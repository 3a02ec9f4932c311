# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.network.client",
#   "purpose": "Request execution loop and the shared client factory.",
#   "sections": [
#     {"id": "client", "name": "Client", "anchor": "class-client", "kind": "class"},
#     {"id": "get-http-client", "name": "get_http_client", "anchor": "function-get-http-client", "kind": "function"},
#     {"id": "close-http-client", "name": "close_http_client", "anchor": "function-close-http-client", "kind": "function"},
#     {"id": "reset-http-client", "name": "reset_http_client", "anchor": "function-reset-http-client", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Request execution loop and the shared client factory.

:meth:`Client.execute` sends a request through the :class:`Connector`, asks the
:class:`RedirectPolicy` what to do with each response, and repeats until the
policy is done. The loop is strictly sequential and its only state is a
per-call :class:`RedirectState`, so one :class:`Client` can serve many
concurrent ``execute`` calls. Intermediate redirect responses are closed as
soon as they are inspected; if the call is cancelled or times out, the
response in hand is closed too.

Key design for the shared client:

- **Lazy initialization**: created on first :func:`get_http_client` call.
- **Config binding**: bound to the first settings' ``config_hash``; later
  differing settings log a warning once and the client is **not** rebuilt.
- **PID-aware**: a forked child detects the PID change and builds its own.

Example:
    >>> client = Client()
    >>> response = await client.execute(RequestBuilder.get("https://example.org").empty())  # doctest: +SKIP
    >>> await response.to_text()  # doctest: +SKIP
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import httpx

from ReqFlow.decoding import ResponsePostProcessor
from ReqFlow.errors import Timeout
from ReqFlow.network.connector import Connector, RawResponse
from ReqFlow.network.redirect import RedirectPolicy, RedirectState
from ReqFlow.request import Request, RequestBuilder
from ReqFlow.response import Response
from ReqFlow.settings import ClientSettings, ResolvedOptions

logger = logging.getLogger(__name__)

__all__ = [
    "Client",
    "get_http_client",
    "close_http_client",
    "reset_http_client",
]

HeaderInput = Optional[Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]]


class Client:
    """Executes requests, following redirects per the configured policy."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        *,
        connector: Optional[Connector] = None,
        post_processor: Optional[ResponsePostProcessor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.connector = connector or Connector.from_settings(self.settings, transport=transport)
        self.post_processor = post_processor or ResponsePostProcessor(
            default_charset=self.settings.default_charset,
            decompress=self.settings.decompress,
        )
        self._closed = False

    def default_headers(self) -> Dict[str, str]:
        """Headers added to every request that does not set them itself."""
        headers = {"User-Agent": self.settings.user_agent}
        if self.settings.decompress:
            headers["Accept-Encoding"] = self.post_processor.codecs.accept_encoding
        headers.update(self.settings.default_headers)
        return headers

    def redirect_policy(self, resolved: ResolvedOptions) -> RedirectPolicy:
        return RedirectPolicy(
            max_redirects=resolved.max_redirects,
            follow_redirects=resolved.follow_redirects,
            strip_sensitive_headers=self.settings.strip_sensitive_headers,
        )

    async def execute(self, request: Request) -> Response:
        """Send ``request`` and follow redirects until a final response arrives.

        ``request_timeout`` bounds the whole call, every redirect hop included,
        up to the point the final response headers are available.

        Raises:
            ConnectError: if a connection cannot be established.
            TransportError: for other I/O failures; nothing is retried.
            RedirectError: for redirect failures.
            Timeout: when the request deadline expires.
        """
        resolved = self.settings.resolve(request.options)
        prepared = request.with_default_headers(self.default_headers())
        if resolved.request_timeout is None:
            return await self._execute(prepared, resolved)
        try:
            return await asyncio.wait_for(
                self._execute(prepared, resolved), timeout=resolved.request_timeout
            )
        except asyncio.TimeoutError as exc:
            logger.debug(
                "Request deadline expired",
                extra={"url": str(request.url), "timeout": resolved.request_timeout},
            )
            raise Timeout(
                f"{request.method} {request.url} exceeded {resolved.request_timeout}s"
            ) from exc

    async def _execute(self, request: Request, resolved: ResolvedOptions) -> Response:
        policy = self.redirect_policy(resolved)
        state = RedirectState()
        current = request
        while True:
            raw: RawResponse = await self.connector.send(
                current, connect_timeout=resolved.connect_timeout
            )
            try:
                decision = policy.decide(current, raw.status, raw.headers, state)
                if decision.done:
                    break
                state.record(str(current.url), raw.status)
                await raw.aclose()
            except BaseException:
                await raw.aclose()
                raise
            current = decision.request

        logger.debug(
            "Request completed",
            extra={
                "method": current.method,
                "url": str(current.url),
                "status": raw.status,
                "redirects": state.count,
            },
        )
        return Response(
            raw,
            request=current,
            post_processor=self.post_processor,
            max_body_bytes=self.settings.max_body_bytes,
            history=state.history,
            extensions=request.extensions if self.settings.carry_extensions else None,
        )

    # -- verb helpers ---------------------------------------------------------

    async def request(
        self,
        method: str,
        target: Union[str, httpx.URL],
        *,
        headers: HeaderInput = None,
        query: Optional[Mapping[str, Any]] = None,
        content: Optional[bytes] = None,
        json: Any = None,
        form: Optional[Mapping[str, Any]] = None,
    ) -> Response:
        """Build and execute a request in one call."""
        builder = RequestBuilder(method, target)
        if headers:
            builder.headers(headers)
        if query:
            builder.query(query)
        if json is not None:
            return await self.execute(builder.json(json))
        if form is not None:
            return await self.execute(builder.form(form))
        if content is not None:
            return await self.execute(builder.bytes(content))
        return await self.execute(builder.empty())

    async def get(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("GET", target, **kwargs)

    async def head(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("HEAD", target, **kwargs)

    async def post(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("POST", target, **kwargs)

    async def put(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("PUT", target, **kwargs)

    async def patch(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("PATCH", target, **kwargs)

    async def delete(self, target: Union[str, httpx.URL], **kwargs: Any) -> Response:
        return await self.request("DELETE", target, **kwargs)

    # -- lifecycle ------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.connector.aclose()
        logger.debug("HTTP client closed")

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} max_redirects={self.settings.max_redirects}>"


# ============================================================================
# Global Client State
# ============================================================================

_client: Optional[Client] = None
_client_lock = threading.Lock()
_client_bind_hash: Optional[str] = None
_client_bind_pid: Optional[int] = None
_config_hash_mismatch_warned = False


def get_http_client(settings: Optional[ClientSettings] = None) -> Client:
    """Get or create the shared :class:`Client`.

    Behavior:
        - First call: creates the client, binds it to the settings' config_hash and PID.
        - Subsequent calls: return the same client.
        - Different settings after bind: warning logged once, no rebuild.
        - Process forked: the child drops the inherited client and builds a new one.

    The underlying connections belong to the event loop that first uses them;
    call :func:`close_http_client` before that loop ends.
    """
    global _client, _client_bind_hash, _client_bind_pid, _config_hash_mismatch_warned

    if _client is not None and _client_bind_pid == os.getpid():
        if settings is not None:
            current_hash = settings.config_hash()
            if current_hash != _client_bind_hash and not _config_hash_mismatch_warned:
                logger.warning(
                    "Settings config_hash changed after HTTP client was initialized. "
                    "Continuing with bound client; no hot-reload. "
                    "Reset via reset_http_client() if desired.",
                    extra={"bind_hash": _client_bind_hash, "current_hash": current_hash},
                )
                _config_hash_mismatch_warned = True
        return _client

    with _client_lock:
        if _client is not None and _client_bind_pid == os.getpid():
            return _client

        if _client is not None:
            # Sockets inherited from the parent are not ours to close.
            logger.debug("Process forked; discarding inherited HTTP client")
            _client = None

        settings = settings or ClientSettings()
        _client = Client(settings)
        _client_bind_hash = settings.config_hash()
        _client_bind_pid = os.getpid()
        _config_hash_mismatch_warned = False

        logger.debug(
            "HTTP client initialized",
            extra={"config_hash": _client_bind_hash, "pid": _client_bind_pid},
        )
        return _client


async def close_http_client() -> None:
    """Close the shared client; safe to call when none exists."""
    global _client

    with _client_lock:
        client, _client = _client, None
    if client is not None:
        await client.aclose()


async def reset_http_client() -> None:
    """Close the shared client and forget its binding (primarily for tests)."""
    global _client_bind_hash, _client_bind_pid, _config_hash_mismatch_warned

    await close_http_client()
    _client_bind_hash = None
    _client_bind_pid = None
    _config_hash_mismatch_warned = False
