# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.policy",
#   "purpose": "HTTP policy constants and defaults.",
#   "sections": []
# }
# === /NAVMAP ===

"""HTTP policy constants and defaults.

Defines timeout budgets, connection pooling parameters, redirect semantics and
content negotiation defaults for the HTTPX-backed transport. Settings models in
:mod:`ReqFlow.settings` use these values as their defaults.
"""

from ReqFlow._version import __version__

# ============================================================================
# Timeout Budgets (seconds)
# ============================================================================

#: Connection establishment timeout (TCP handshake plus TLS negotiation)
HTTP_CONNECT_TIMEOUT = 5.0

#: Deadline for a whole ``execute`` call, including every redirect hop
HTTP_REQUEST_TIMEOUT = 30.0

#: Read timeout (time between data packets on an established connection)
HTTP_READ_TIMEOUT = 30.0

#: Write timeout (time to send request body)
HTTP_WRITE_TIMEOUT = 30.0

#: Pool timeout (acquiring a connection from the pool)
HTTP_POOL_TIMEOUT = 5.0


# ============================================================================
# Connection Pooling
# ============================================================================

#: Maximum concurrent connections (total across all hosts)
MAX_CONNECTIONS = 100

#: Maximum idle connections kept for reuse
MAX_KEEPALIVE_CONNECTIONS = 20

#: How long to keep idle connections alive (seconds)
KEEPALIVE_EXPIRY = 5.0

#: Enable HTTP/2 negotiation over TLS
HTTP2_ENABLED = False


# ============================================================================
# Redirects
# ============================================================================

#: Follow redirects automatically unless a request opts out
FOLLOW_REDIRECTS = True

#: Maximum number of redirect hops followed per ``execute`` call
MAX_REDIRECTS = 10

#: Upper bound accepted for ``max_redirects``
MAX_REDIRECTS_LIMIT = 100

#: Status codes that carry a ``Location`` to follow
REDIRECT_STATUS_CODES = frozenset({301, 302, 303, 307, 308})

#: Status codes that must replay method and body unchanged
METHOD_PRESERVING_STATUS_CODES = frozenset({307, 308})

#: Methods rewritten to GET on 301/302 (non-idempotent writes)
REWRITE_ON_MOVED_METHODS = frozenset({"POST", "PATCH"})

#: Headers removed when a redirect leaves the original origin
SENSITIVE_HEADERS = (
    "authorization",
    "proxy-authorization",
    "cookie",
    "cookie2",
    "www-authenticate",
)

#: Payload headers removed when a redirect drops the body
BODY_HEADERS = ("content-length", "content-type", "transfer-encoding", "content-encoding")


# ============================================================================
# Content Negotiation & Bodies
# ============================================================================

#: Charset assumed when neither Content-Type nor a BOM declares one
DEFAULT_CHARSET = "utf-8"

#: Limit for buffered body terminals (to_bytes/to_text/to_structured)
MAX_BODY_BYTES = 64 * 1024 * 1024  # 64 MiB

#: Chunk size for reading files and slicing in-memory bodies
CHUNK_SIZE = 64 * 1024

#: Methods that get an explicit ``Content-Length: 0`` for empty bodies
EMPTY_BODY_LENGTH_METHODS = frozenset({"POST", "PUT", "PATCH"})


# ============================================================================
# User-Agent
# ============================================================================

#: Default User-Agent header value
USER_AGENT = f"ReqFlow/{__version__}"


__all__ = [
    # Timeouts
    "HTTP_CONNECT_TIMEOUT",
    "HTTP_REQUEST_TIMEOUT",
    "HTTP_READ_TIMEOUT",
    "HTTP_WRITE_TIMEOUT",
    "HTTP_POOL_TIMEOUT",
    # Connection pooling
    "MAX_CONNECTIONS",
    "MAX_KEEPALIVE_CONNECTIONS",
    "KEEPALIVE_EXPIRY",
    "HTTP2_ENABLED",
    # Redirects
    "FOLLOW_REDIRECTS",
    "MAX_REDIRECTS",
    "MAX_REDIRECTS_LIMIT",
    "REDIRECT_STATUS_CODES",
    "METHOD_PRESERVING_STATUS_CODES",
    "REWRITE_ON_MOVED_METHODS",
    "SENSITIVE_HEADERS",
    "BODY_HEADERS",
    # Content negotiation
    "DEFAULT_CHARSET",
    "MAX_BODY_BYTES",
    "CHUNK_SIZE",
    "EMPTY_BODY_LENGTH_METHODS",
    # User-Agent
    "USER_AGENT",
]
