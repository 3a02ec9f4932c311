# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.network.redirect",
#   "purpose": "Redirect decision state machine with method/body rewriting and audit trail.",
#   "sections": [
#     {"id": "redirectstate", "name": "RedirectState", "anchor": "class-redirectstate", "kind": "class"},
#     {"id": "redirectdecision", "name": "RedirectDecision", "anchor": "class-redirectdecision", "kind": "class"},
#     {"id": "redirectpolicy", "name": "RedirectPolicy", "anchor": "class-redirectpolicy", "kind": "class"},
#     {"id": "format-audit-trail", "name": "format_audit_trail", "anchor": "function-format-audit-trail", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Redirect decision state machine with method/body rewriting and audit trail.

HTTPX auto-redirect stays disabled; the client asks :class:`RedirectPolicy`
what to do after every response:

- Not a followable redirect (anything outside 301/302/303/307/308), or
  following disabled → done, the response goes to the caller.
- Missing or unparsable ``Location`` → :class:`~ReqFlow.errors.InvalidLocation`.
- Counter already at ``max_redirects`` → :class:`~ReqFlow.errors.TooManyRedirects`
  before any further I/O.
- Otherwise a new :class:`~ReqFlow.request.Request` is derived for the
  resolved location:

  * 303 → ``GET`` with an empty body, whatever the original method.
  * 301/302 with ``POST``/``PATCH`` → ``GET`` with an empty body.
  * 307/308, and 301/302 for other methods → method and body unchanged; a
    body that cannot be re-read raises :class:`~ReqFlow.errors.BodyNotReplayable`.

When the redirect leaves the original host or port, or downgrades https to http,
credentials (``Authorization``, ``Cookie`` and friends) are dropped.

Example:
    >>> policy = RedirectPolicy(max_redirects=5)
    >>> state = RedirectState()
    >>> decision = policy.decide(request, 302, headers, state)  # doctest: +SKIP
    >>> decision.request.url  # doctest: +SKIP
    URL('https://example.org/target')
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Tuple

import httpx

from ReqFlow import policy as defaults
from ReqFlow.body import EmptyBody
from ReqFlow.errors import BodyNotReplayable, InvalidLocation, TooManyRedirects
from ReqFlow.headers import HeaderMap
from ReqFlow.request import SUPPORTED_SCHEMES, Request

logger = logging.getLogger(__name__)

__all__ = [
    "RedirectState",
    "RedirectDecision",
    "RedirectPolicy",
    "format_audit_trail",
]


# ============================================================================
# State
# ============================================================================


@dataclasses.dataclass
class RedirectState:
    """Per-``execute`` redirect bookkeeping; never shared between calls."""

    count: int = 0
    history: List[Tuple[str, int]] = dataclasses.field(default_factory=list)

    def record(self, url: str, status: int) -> None:
        self.history.append((url, status))

    @property
    def hops(self) -> List[str]:
        return [url for url, _ in self.history]


@dataclasses.dataclass(frozen=True)
class RedirectDecision:
    """Outcome of inspecting one response: ``request`` is ``None`` when done."""

    request: Optional[Request] = None
    stripped_headers: Tuple[str, ...] = ()

    @property
    def done(self) -> bool:
        return self.request is None


# ============================================================================
# Policy
# ============================================================================


class RedirectPolicy:
    """Decides whether and how a request is re-issued after a 3xx response."""

    def __init__(
        self,
        max_redirects: int = defaults.MAX_REDIRECTS,
        follow_redirects: bool = defaults.FOLLOW_REDIRECTS,
        *,
        strip_sensitive_headers: bool = True,
    ) -> None:
        if max_redirects < 0:
            raise ValueError("max_redirects must be non-negative")
        self.max_redirects = max_redirects
        self.follow_redirects = follow_redirects
        self.strip_sensitive_headers = strip_sensitive_headers

    def is_redirect(self, status: int) -> bool:
        return status in defaults.REDIRECT_STATUS_CODES

    def resolve_location(self, request: Request, status: int, headers: HeaderMap) -> httpx.URL:
        """Resolve ``Location`` against the request URL (RFC 7231 §7.1.2)."""
        location = headers.get("location")
        if location is None or not location.strip():
            raise InvalidLocation(str(request.url), status)
        try:
            target = request.url.join(location.strip())
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise InvalidLocation(str(request.url), status, location) from exc
        if target.scheme not in SUPPORTED_SCHEMES or not target.host:
            raise InvalidLocation(str(request.url), status, location)
        # A fragment on the original target survives when Location has none.
        if not target.fragment and request.url.fragment:
            target = target.copy_with(fragment=request.url.fragment)
        return target

    def decide(
        self,
        request: Request,
        status: int,
        headers: HeaderMap,
        state: RedirectState,
    ) -> RedirectDecision:
        """Return the next request to send, or a done decision.

        Raises:
            InvalidLocation: if ``Location`` is missing or unusable.
            TooManyRedirects: if ``state.count`` already equals ``max_redirects``.
            BodyNotReplayable: if the body must be resent but cannot be re-read.
        """
        if not self.follow_redirects or not self.is_redirect(status):
            return RedirectDecision()

        target = self.resolve_location(request, status, headers)
        if state.count >= self.max_redirects:
            raise TooManyRedirects(
                self.max_redirects, state.hops + [str(request.url), str(target)]
            )

        method, body = self._rewrite(request, status)
        new_headers = request.headers.copy()
        if body is not request.body:
            for name in defaults.BODY_HEADERS:
                new_headers.pop(name, None)

        stripped: Tuple[str, ...] = ()
        if self.strip_sensitive_headers and self._leaves_origin(request.url, target):
            stripped = tuple(name for name in defaults.SENSITIVE_HEADERS if name in new_headers)
            for name in stripped:
                del new_headers[name]
            if stripped:
                logger.debug(
                    "Stripped sensitive headers on redirect",
                    extra={"from": str(request.url), "to": str(target), "headers": list(stripped)},
                )

        state.count += 1
        logger.debug(
            "Following redirect",
            extra={
                "from": str(request.url),
                "to": str(target),
                "status": status,
                "method": method,
                "hop": state.count,
            },
        )
        return RedirectDecision(
            request=request.evolve(method=method, url=target, headers=new_headers, body=body),
            stripped_headers=stripped,
        )

    def _rewrite(self, request: Request, status: int):
        if status == 303:
            return "GET", EmptyBody()
        if status not in defaults.METHOD_PRESERVING_STATUS_CODES and (
            request.method in defaults.REWRITE_ON_MOVED_METHODS
        ):
            return "GET", EmptyBody()
        body = request.body
        if not body.is_empty and not body.replayable:
            raise BodyNotReplayable(
                f"{request.method} {request.url} answered {status} but its body is a one-shot stream"
            )
        return request.method, body

    @staticmethod
    def _leaves_origin(source: httpx.URL, target: httpx.URL) -> bool:
        if source.host.lower() != target.host.lower() or source.port != target.port:
            return True
        return source.scheme == "https" and target.scheme == "http"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(max_redirects={self.max_redirects}, "
            f"follow_redirects={self.follow_redirects})"
        )


# ============================================================================
# Utilities
# ============================================================================


def format_audit_trail(audit_trail: List[Tuple[str, int]]) -> str:
    """Format audit trail for logging/display.

    Args:
        audit_trail: List of (url, status) tuples

    Returns:
        Formatted string like "http://a (301) -> http://b (200)"
    """
    return " -> ".join(f"{url} ({status})" for url, status in audit_trail)
