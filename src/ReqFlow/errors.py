"""Exception hierarchy shared by request building, execution, and body consumption.

Every failure surfaced by the client is a :class:`ReqFlowError`.  The groups
mirror the phases a request goes through so callers can react to broad
categories (for example any :class:`BuilderError` before I/O happened, or any
:class:`RedirectError` while following hops) while still having access to the
specialised leaves when finer-grained handling is required.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

__all__ = [
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
    "CharsetDecodeFailed",
    "DecompressionFailed",
    "Timeout",
]


class ReqFlowError(RuntimeError):
    """Base exception for every failure raised by the client."""


# ============================================================================
# Builder
# ============================================================================


class BuilderError(ReqFlowError):
    """Raised when request inputs are invalid; always raised before any I/O."""


class InvalidUri(BuilderError):
    """Raised when the request target is not a well-formed absolute URI."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Invalid URI {target!r}: {reason}")
        self.target = target
        self.reason = reason


class InvalidHeader(BuilderError):
    """Raised for header names or values that cannot be put on the wire."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Invalid header {name!r}: {reason}")
        self.name = name
        self.reason = reason


class UnsupportedScheme(BuilderError):
    """Raised when a URI scheme is neither ``http`` nor ``https``."""

    def __init__(self, scheme: str) -> None:
        super().__init__(f"Unsupported URI scheme: {scheme!r}")
        self.scheme = scheme


class BodyConflict(BuilderError):
    """Raised when a builder is finalised more than once."""


# ============================================================================
# Connection & transport
# ============================================================================


class ConnectError(ReqFlowError):
    """Raised when a connection to the remote host cannot be established."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class TlsHandshakeFailed(ConnectError):
    """TLS negotiation or certificate verification failed."""


class ConnectionRefused(ConnectError):
    """The remote host could not be reached or refused the connection."""


class TransportError(ReqFlowError):
    """Opaque wrapper around a lower-layer I/O failure."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


# ============================================================================
# Redirects
# ============================================================================


class RedirectError(ReqFlowError):
    """Base exception for redirect handling errors."""


class TooManyRedirects(RedirectError):
    """Redirect chain exceeds the configured maximum number of hops."""

    def __init__(self, max_redirects: int, hops: Sequence[str]) -> None:
        self.max_redirects = max_redirects
        self.hops: List[str] = list(hops)
        super().__init__(
            f"Redirect chain exceeded {max_redirects} redirects. Hops: {' -> '.join(self.hops)}"
        )


class InvalidLocation(RedirectError):
    """Redirect response with a missing or unparsable ``Location`` header."""

    def __init__(self, url: str, status: int, location: Optional[str] = None) -> None:
        self.url = url
        self.status = status
        self.location = location
        if location is None:
            message = f"Redirect response from {url} (status {status}) missing Location header"
        else:
            message = f"Redirect response from {url} (status {status}) has invalid Location {location!r}"
        super().__init__(message)


class BodyNotReplayable(RedirectError):
    """A method-preserving redirect needs a body that can only be read once."""


# ============================================================================
# Bodies
# ============================================================================


class BodyError(ReqFlowError):
    """Base exception for body production and consumption failures."""


class EncodingFailed(BodyError):
    """A structured or form payload could not be serialised."""


class SizeLimitExceeded(BodyError):
    """A buffered body grew beyond the configured limit."""

    def __init__(self, limit: int, partial: bytes = b"") -> None:
        super().__init__(f"Body exceeded limit of {limit} bytes")
        self.limit = limit
        self.partial = partial


class AlreadyConsumed(BodyError):
    """The response body was already consumed by a terminal accessor."""


class StorageWriteFailed(BodyError):
    """Writing a streamed body to storage failed; the destination may be partial."""

    def __init__(self, message: str, *, bytes_written: int = 0) -> None:
        super().__init__(message)
        self.bytes_written = bytes_written


# ============================================================================
# Decoding
# ============================================================================


class DecodeError(ReqFlowError):
    """Base exception for content decoding failures."""


class UnsupportedCompression(DecodeError):
    """The response uses a ``Content-Encoding`` without a registered codec."""

    def __init__(self, encoding: str) -> None:
        super().__init__(f"Unsupported Content-Encoding: {encoding!r}")
        self.encoding = encoding


class DecompressionFailed(DecodeError):
    """The compressed payload is corrupt or truncated.

    ``raw`` holds the undecoded body when a buffered accessor read it whole.
    """

    def __init__(self, encoding: str, reason: str, *, raw: bytes = b"") -> None:
        super().__init__(f"Failed to decode {encoding} content: {reason}")
        self.encoding = encoding
        self.raw = raw


class CharsetDecodeFailed(DecodeError):
    """Bytes could not be converted to text with the selected charset."""

    def __init__(self, charset: str, reason: str, *, raw: bytes = b"") -> None:
        super().__init__(f"Failed to decode body as {charset}: {reason}")
        self.charset = charset
        self.raw = raw


class Timeout(ReqFlowError):
    """A connect or request deadline expired."""


# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.errors",
#   "purpose": "Define the exception hierarchy used across request building, execution, and consumption",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "builder", "name": "Builder Errors", "anchor": "BLD", "kind": "api"},
#     {"id": "transport", "name": "Connection & Transport Errors", "anchor": "TRN", "kind": "api"},
#     {"id": "redirect", "name": "Redirect Errors", "anchor": "RED", "kind": "api"},
#     {"id": "body", "name": "Body & Decode Errors", "anchor": "BOD", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
