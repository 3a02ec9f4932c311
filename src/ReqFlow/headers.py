# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.headers",
#   "purpose": "Case-insensitive header mapping and typed header parsers.",
#   "sections": [
#     {"id": "headermap", "name": "HeaderMap", "anchor": "class-headermap", "kind": "class"},
#     {"id": "validation", "name": "validate_header", "anchor": "function-validate-header", "kind": "function"},
#     {"id": "content-type", "name": "ContentType", "anchor": "class-contenttype", "kind": "class"},
#     {"id": "content-disposition", "name": "ContentDisposition", "anchor": "class-contentdisposition", "kind": "class"},
#     {"id": "entity-tag", "name": "EntityTag", "anchor": "class-entitytag", "kind": "class"},
#     {"id": "cookie", "name": "Cookie", "anchor": "class-cookie", "kind": "class"},
#     {"id": "http-dates", "name": "parse_http_date", "anchor": "function-parse-http-date", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Case-insensitive header mapping and typed header parsers.

Header values are kept as ``str`` (latin-1 compatible, as on the wire). The
parsers in this module are pure functions over those strings; response accessors
call them on demand so nothing is parsed eagerly.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Dict, Iterable, Iterator, List, Mapping, MutableMapping, Optional, Tuple, Union
from urllib.parse import quote, unquote_to_bytes

import httpx

from ReqFlow.errors import InvalidHeader

logger = logging.getLogger(__name__)

__all__ = [
    "HeaderMap",
    "HeaderInput",
    "validate_header",
    "ContentType",
    "ContentDisposition",
    "EntityTag",
    "Cookie",
    "parse_content_type",
    "parse_content_disposition",
    "parse_etag",
    "parse_set_cookie",
    "parse_content_encoding",
    "parse_http_date",
    "format_http_date",
]

#: Fields that may legitimately appear several times as separate lines
REPEATABLE_HEADERS = frozenset({"set-cookie", "www-authenticate", "proxy-authenticate", "warning"})

_WIRE_ENCODING = "latin-1"

_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def validate_header(name: str, value: str) -> Tuple[str, str]:
    """Validate a header pair and return it with surrounding whitespace trimmed.

    Raises:
        InvalidHeader: if the name is not an RFC 7230 token, or the value holds
            control characters or characters outside latin-1.
    """
    if not isinstance(name, str) or not _TOKEN_RE.match(name):
        raise InvalidHeader(str(name), "name is not a valid token")
    if not isinstance(value, str):
        value = str(value)
    try:
        value.encode("latin-1")
    except UnicodeEncodeError as exc:
        raise InvalidHeader(name, f"value is not latin-1 encodable: {exc.reason}") from exc
    for char in value:
        code = ord(char)
        if (code < 0x20 and char != "\t") or code == 0x7F:
            raise InvalidHeader(name, f"value contains non-printable character {code:#04x}")
    return name, value.strip(" \t")


HeaderInput = Union["HeaderMap", Mapping[str, str], Iterable[Tuple[str, str]], None]


class HeaderMap(MutableMapping[str, str]):
    """Ordered, case-insensitive header mapping backed by :class:`httpx.Headers`.

    Setting a name replaces every earlier value, except through :meth:`add` for
    fields listed in ``REPEATABLE_HEADERS`` (``Set-Cookie`` and friends), which
    keep one entry per line. ``map[name]`` joins multiple values with ``", "``;
    use :meth:`get_all` for the individual lines. On top of ``httpx.Headers``
    this adds validation on write and a read-only mode.
    """

    def __init__(self, headers: HeaderInput = None) -> None:
        self._headers = httpx.Headers(encoding=_WIRE_ENCODING)
        self._frozen = False
        if headers is None:
            return
        pairs = headers.items() if isinstance(headers, Mapping) else headers
        if isinstance(headers, HeaderMap):
            pairs = headers.multi_items()
        for name, value in pairs:
            self.add(name, value)

    # -- read access -------------------------------------------------------

    def __getitem__(self, name: str) -> str:
        return self._headers[name]

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for name, _ in self.multi_items():
            key = name.lower()
            if key not in seen:
                seen.add(key)
                yield name

    def __len__(self) -> int:
        return len(self._headers.keys())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._headers

    def get_all(self, name: str) -> List[str]:
        return self._headers.get_list(name)

    def multi_items(self) -> List[Tuple[str, str]]:
        """Every line in order, with the name casing it was set with."""
        return [
            (name.decode(_WIRE_ENCODING), value.decode(_WIRE_ENCODING))
            for name, value in self._headers.raw
        ]

    def as_httpx(self) -> httpx.Headers:
        """Return an independent ``httpx.Headers`` holding every line."""
        return self._headers.copy()

    # -- write access ------------------------------------------------------

    def _check_writable(self) -> None:
        if self._frozen:
            raise TypeError("HeaderMap is read-only")

    def __setitem__(self, name: str, value: str) -> None:
        self._check_writable()
        name, value = validate_header(name, value)
        self._headers[name] = value

    def __delitem__(self, name: str) -> None:
        self._check_writable()
        del self._headers[name]

    def add(self, name: str, value: str) -> None:
        """Insert a value, keeping earlier lines only for repeatable fields."""
        if name.lower() not in REPEATABLE_HEADERS:
            self[name] = value
            return
        self._check_writable()
        name, value = validate_header(name, value)
        self._headers = httpx.Headers(
            self._headers.raw + [(name.encode(_WIRE_ENCODING), value.encode(_WIRE_ENCODING))],
            encoding=_WIRE_ENCODING,
        )

    def setdefault(self, name: str, value: str = "") -> str:  # type: ignore[override]
        if name not in self:
            self[name] = value
        return self[name]

    @classmethod
    def from_wire(
        cls, pairs: Union[httpx.Headers, Iterable[Tuple[Union[str, bytes], Union[str, bytes]]]]
    ) -> "HeaderMap":
        """Build a map from received header lines without re-validating them.

        Every line is kept, so a field split across lines reads back joined.
        """
        if isinstance(pairs, httpx.Headers):
            pairs = pairs.raw
        headers = cls()
        headers._headers = httpx.Headers(list(pairs), encoding=_WIRE_ENCODING)
        return headers

    # -- copies ------------------------------------------------------------

    def copy(self) -> "HeaderMap":
        """Return a writable copy."""
        clone = HeaderMap()
        clone._headers = self._headers.copy()
        return clone

    def frozen(self) -> "HeaderMap":
        """Return a read-only copy."""
        clone = self.copy()
        clone._frozen = True
        return clone

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeaderMap):
            return self._headers == other._headers
        if isinstance(other, Mapping):
            return self == HeaderMap(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.multi_items()!r})"


# ============================================================================
# Parameterised values
# ============================================================================


def _split_params(value: str) -> Tuple[str, Dict[str, str]]:
    """Split ``main; key=value; key="quoted"`` into the main token and params."""
    parts: List[str] = []
    current: List[str] = []
    in_quotes = False
    escaped = False
    for char in value:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\" and in_quotes:
            current.append(char)
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char == ";" and not in_quotes:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))

    main = parts[0].strip()
    params: Dict[str, str] = {}
    for raw in parts[1:]:
        key, sep, param_value = raw.partition("=")
        key = key.strip().lower()
        if not key:
            continue
        param_value = param_value.strip()
        if len(param_value) >= 2 and param_value[0] == param_value[-1] == '"':
            param_value = re.sub(r"\\(.)", r"\1", param_value[1:-1])
        params[key] = param_value if sep else ""
    return main, params


@dataclass(frozen=True)
class ContentType:
    """Parsed ``Content-Type``."""

    mime: str
    params: Mapping[str, str] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.mime.partition("/")[0]

    @property
    def subtype(self) -> str:
        return self.mime.partition("/")[2]

    @property
    def charset(self) -> Optional[str]:
        charset = self.params.get("charset")
        return charset.strip().lower() if charset else None

    @property
    def boundary(self) -> Optional[str]:
        return self.params.get("boundary")

    @property
    def is_json(self) -> bool:
        return self.subtype == "json" or self.subtype.endswith("+json")

    def __str__(self) -> str:
        rendered = self.mime
        for key, value in self.params.items():
            rendered += f"; {key}={value}"
        return rendered


def parse_content_type(value: Optional[str]) -> Optional[ContentType]:
    """Parse a ``Content-Type`` value; ``None`` when absent or malformed."""
    if not value:
        return None
    mime, params = _split_params(value)
    mime = mime.lower()
    main, sep, sub = mime.partition("/")
    if not sep or not _TOKEN_RE.match(main) or not _TOKEN_RE.match(sub):
        return None
    return ContentType(mime=mime, params=params)


@dataclass(frozen=True)
class ContentDisposition:
    """Parsed ``Content-Disposition`` (RFC 6266 / RFC 7578).

    ``filename`` prefers the RFC 5987 extended ``filename*`` parameter when it
    is present and decodable.
    """

    kind: str
    name: Optional[str] = None
    filename: Optional[str] = None
    filename_charset: Optional[str] = None
    filename_language: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_inline(self) -> bool:
        return self.kind == "inline"

    @property
    def is_attachment(self) -> bool:
        return self.kind == "attachment"

    def __str__(self) -> str:
        rendered = self.kind
        if self.name is not None:
            rendered += f'; name="{_quote_param(self.name)}"'
        if self.filename is not None:
            try:
                self.filename.encode("ascii")
            except UnicodeEncodeError:
                encoded = quote(self.filename.encode("utf-8"), safe="!#$&+-.^_`|~")
                rendered += f"; filename*=UTF-8''{encoded}"
            else:
                rendered += f'; filename="{_quote_param(self.filename)}"'
        return rendered


def _quote_param(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _decode_ext_value(value: str) -> Optional[Tuple[str, Optional[str], str]]:
    charset, sep, rest = value.partition("'")
    if not sep:
        return None
    language, sep, encoded = rest.partition("'")
    if not sep:
        return None
    try:
        text = unquote_to_bytes(encoded).decode(charset or "utf-8")
    except (LookupError, UnicodeDecodeError):
        return None
    return charset, language or None, text


def parse_content_disposition(value: Optional[str]) -> Optional[ContentDisposition]:
    """Parse a ``Content-Disposition`` value; ``None`` when absent or malformed."""
    if not value:
        return None
    kind, params = _split_params(value)
    kind = kind.lower()
    if not kind or not _TOKEN_RE.match(kind):
        return None

    filename = params.get("filename") or None
    charset = language = None
    extended = params.get("filename*")
    if extended:
        decoded = _decode_ext_value(extended)
        if decoded is not None:
            charset, language, filename = decoded
    return ContentDisposition(
        kind=kind,
        name=params.get("name"),
        filename=filename,
        filename_charset=charset,
        filename_language=language,
        params=params,
    )


# ============================================================================
# Validators
# ============================================================================


@dataclass(frozen=True)
class EntityTag:
    """Entity tag from ``ETag`` (RFC 7232)."""

    tag: str
    weak: bool = False

    def strong_eq(self, other: "EntityTag") -> bool:
        return not self.weak and not other.weak and self.tag == other.tag

    def weak_eq(self, other: "EntityTag") -> bool:
        return self.tag == other.tag

    def __str__(self) -> str:
        return f'W/"{self.tag}"' if self.weak else f'"{self.tag}"'


def parse_etag(value: Optional[str]) -> Optional[EntityTag]:
    """Parse an ``ETag`` value; ``None`` when absent or malformed."""
    if not value:
        return None
    value = value.strip()
    weak = value[:2] in ("W/", "w/")
    if weak:
        value = value[2:]
    if len(value) < 2 or value[0] != '"' or value[-1] != '"':
        return None
    tag = value[1:-1]
    if '"' in tag:
        return None
    return EntityTag(tag=tag, weak=weak)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP-date into an aware UTC ``datetime``."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_http_date(value: datetime) -> str:
    """Render ``value`` as an IMF-fixdate."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


# ============================================================================
# Cookies
# ============================================================================


@dataclass(frozen=True)
class Cookie:
    """One ``Set-Cookie`` record (RFC 6265)."""

    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[datetime] = None
    max_age: Optional[int] = None
    secure: bool = False
    http_only: bool = False
    same_site: Optional[str] = None


def parse_set_cookie(value: str) -> Optional[Cookie]:
    """Parse one ``Set-Cookie`` line; ``None`` when it has no ``name=value`` pair."""
    pair, *attributes = value.split(";")
    name, sep, cookie_value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    cookie_value = cookie_value.strip()
    if len(cookie_value) >= 2 and cookie_value[0] == cookie_value[-1] == '"':
        cookie_value = cookie_value[1:-1]

    fields: Dict[str, object] = {}
    for attribute in attributes:
        key, _, attr_value = attribute.partition("=")
        key = key.strip().lower()
        attr_value = attr_value.strip()
        if key == "domain" and attr_value:
            fields["domain"] = attr_value.lstrip(".").lower()
        elif key == "path" and attr_value.startswith("/"):
            fields["path"] = attr_value
        elif key == "expires":
            expires = parse_http_date(attr_value)
            if expires is not None:
                fields["expires"] = expires
        elif key == "max-age":
            try:
                fields["max_age"] = int(attr_value)
            except ValueError:
                logger.debug("Ignoring malformed Max-Age", extra={"cookie": name})
        elif key == "secure":
            fields["secure"] = True
        elif key == "httponly":
            fields["http_only"] = True
        elif key == "samesite" and attr_value:
            fields["same_site"] = attr_value.capitalize()
    return Cookie(name=name, value=cookie_value, **fields)  # type: ignore[arg-type]


# ============================================================================
# Content-Encoding
# ============================================================================


def parse_content_encoding(value: Optional[str]) -> List[str]:
    """Return the codings listed in ``Content-Encoding`` in application order.

    ``identity`` entries are dropped, so an empty list means no decoding.
    """
    if not value:
        return []
    codings = []
    for coding in value.split(","):
        coding = coding.strip().lower()
        if coding and coding != "identity":
            codings.append(coding)
    return codings
