# === NAVMAP v1 ===
# {
#   "module": "ReqFlow.decoding",
#   "purpose": "Content-Encoding codecs, charset decoding, and the response post-processor.",
#   "sections": [
#     {"id": "codec", "name": "Codec", "anchor": "class-codec", "kind": "class"},
#     {"id": "codecregistry", "name": "CodecRegistry", "anchor": "class-codecregistry", "kind": "class"},
#     {"id": "charsetdecoder", "name": "CharsetDecoder", "anchor": "class-charsetdecoder", "kind": "class"},
#     {"id": "responsepostprocessor", "name": "ResponsePostProcessor", "anchor": "class-responsepostprocessor", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Content-Encoding codecs, charset decoding, and the response post-processor.

Codecs are runtime-selected strategy objects (identity, gzip, deflate, brotli)
held by a :class:`CodecRegistry`; the byte-level algorithms come from ``zlib``
and the ``brotli`` package. :class:`ResponsePostProcessor` wraps a raw body
stream in the decoders named by ``Content-Encoding`` and turns bytes into text
with the charset from ``Content-Type``, a byte-order mark, or the configured
default.
"""

from __future__ import annotations

import codecs
import logging
import zlib
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import brotli

from ReqFlow import policy
from ReqFlow.errors import CharsetDecodeFailed, DecompressionFailed, UnsupportedCompression
from ReqFlow.headers import HeaderMap, parse_content_encoding, parse_content_type

logger = logging.getLogger(__name__)

__all__ = [
    "Decoder",
    "Codec",
    "IdentityCodec",
    "GzipCodec",
    "DeflateCodec",
    "BrotliCodec",
    "CodecRegistry",
    "CharsetDecoder",
    "ResponsePostProcessor",
    "default_codec_registry",
]


# ============================================================================
# Codecs
# ============================================================================


class Decoder(ABC):
    """Incremental decoder for one response body."""

    encoding: str = "identity"

    @abstractmethod
    def decode(self, chunk: bytes) -> bytes:
        """Feed ``chunk`` and return whatever output is available."""

    def flush(self) -> bytes:
        """Return remaining output once the input ends."""
        return b""


class Codec(ABC):
    """Factory of :class:`Decoder` objects for one content-coding."""

    names: Tuple[str, ...] = ()

    @abstractmethod
    def decoder(self) -> Decoder:
        """Return a fresh decoder."""


class _IdentityDecoder(Decoder):
    def decode(self, chunk: bytes) -> bytes:
        return chunk


class _ZlibDecoder(Decoder):
    """gzip decoder that continues across concatenated members."""

    def __init__(self, encoding: str, wbits: int) -> None:
        self.encoding = encoding
        self._wbits = wbits
        self._fed = False
        self._decompressor = zlib.decompressobj(wbits)

    def decode(self, chunk: bytes) -> bytes:
        self._fed = self._fed or bool(chunk)
        output = bytearray()
        try:
            output += self._decompressor.decompress(chunk)
            while self._decompressor.eof and self._decompressor.unused_data:
                leftover = self._decompressor.unused_data
                self._decompressor = zlib.decompressobj(self._wbits)
                output += self._decompressor.decompress(leftover)
        except zlib.error as exc:
            raise DecompressionFailed(self.encoding, str(exc)) from exc
        return bytes(output)

    def flush(self) -> bytes:
        try:
            output = self._decompressor.flush()
        except zlib.error as exc:
            raise DecompressionFailed(self.encoding, str(exc)) from exc
        if self._fed and not self._decompressor.eof:
            raise DecompressionFailed(self.encoding, "stream ended before end of compressed data")
        return output


class _DeflateDecoder(Decoder):
    """zlib-wrapped deflate, falling back to raw deflate as some servers send."""

    encoding = "deflate"

    def __init__(self) -> None:
        self._first_attempt = True
        self._fed = False
        self._decompressor = zlib.decompressobj()

    def decode(self, chunk: bytes) -> bytes:
        self._fed = self._fed or bool(chunk)
        was_first_attempt = self._first_attempt
        self._first_attempt = False
        try:
            return self._decompressor.decompress(chunk)
        except zlib.error as exc:
            if was_first_attempt:
                self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
                return self.decode(chunk)
            raise DecompressionFailed(self.encoding, str(exc)) from exc

    def flush(self) -> bytes:
        try:
            output = self._decompressor.flush()
        except zlib.error as exc:
            raise DecompressionFailed(self.encoding, str(exc)) from exc
        if self._fed and not self._decompressor.eof:
            raise DecompressionFailed(self.encoding, "stream ended before end of compressed data")
        return output


class _BrotliDecoder(Decoder):
    encoding = "br"

    def __init__(self) -> None:
        self._fed = False
        self._decompressor = brotli.Decompressor()

    def decode(self, chunk: bytes) -> bytes:
        self._fed = self._fed or bool(chunk)
        try:
            return self._decompressor.process(chunk)
        except brotli.error as exc:
            raise DecompressionFailed(self.encoding, str(exc)) from exc

    def flush(self) -> bytes:
        if self._fed and not self._decompressor.is_finished():
            raise DecompressionFailed(self.encoding, "stream ended before end of compressed data")
        return b""


class IdentityCodec(Codec):
    names = ("identity",)

    def decoder(self) -> Decoder:
        return _IdentityDecoder()


class GzipCodec(Codec):
    names = ("gzip", "x-gzip")

    def decoder(self) -> Decoder:
        return _ZlibDecoder("gzip", zlib.MAX_WBITS | 16)


class DeflateCodec(Codec):
    names = ("deflate",)

    def decoder(self) -> Decoder:
        return _DeflateDecoder()


class BrotliCodec(Codec):
    names = ("br",)

    def decoder(self) -> Decoder:
        return _BrotliDecoder()


class CodecRegistry:
    """Maps content-coding names to codecs."""

    def __init__(self, codecs_: Iterable[Codec] = ()) -> None:
        self._codecs: Dict[str, Codec] = {}
        for codec in codecs_:
            self.register(codec)

    def register(self, codec: Codec) -> None:
        for name in codec.names:
            self._codecs[name.lower()] = codec

    def get(self, name: str) -> Optional[Codec]:
        return self._codecs.get(name.lower())

    def supports(self, name: str) -> bool:
        return name.lower() in self._codecs

    @property
    def accept_encoding(self) -> str:
        """``Accept-Encoding`` value advertising every registered coding."""
        names = [name for name in ("gzip", "deflate", "br") if name in self._codecs]
        return ", ".join(names) if names else "identity"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({sorted(self._codecs)})"


def default_codec_registry() -> CodecRegistry:
    return CodecRegistry([IdentityCodec(), GzipCodec(), DeflateCodec(), BrotliCodec()])


# ============================================================================
# Charsets
# ============================================================================

_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


class CharsetDecoder:
    """Converts bytes to text for a charset label."""

    def sniff(self, data: bytes) -> Optional[str]:
        """Return the charset announced by a byte-order mark, if any."""
        for bom, label in _BOMS:
            if data.startswith(bom):
                return label
        return None

    def decode(self, data: bytes, label: str, *, lossy: bool = False) -> str:
        """Decode ``data`` as ``label``.

        Raises:
            CharsetDecodeFailed: for unknown labels, or malformed input unless
                ``lossy`` substitutes replacement characters.
        """
        try:
            codec = codecs.lookup(label)
        except LookupError as exc:
            raise CharsetDecodeFailed(label, "unknown charset", raw=data) from exc
        name = codec.name
        # A declared utf-8 body may still open with a BOM.
        if name == "utf-8" and data.startswith(codecs.BOM_UTF8):
            name = "utf-8-sig"
        try:
            return data.decode(name, errors="replace" if lossy else "strict")
        except UnicodeDecodeError as exc:
            raise CharsetDecodeFailed(label, str(exc), raw=data) from exc


# ============================================================================
# Post-processing
# ============================================================================


class ResponsePostProcessor:
    """Applies decompression and charset decoding to raw response bodies."""

    def __init__(
        self,
        codecs_: Optional[CodecRegistry] = None,
        charsets: Optional[CharsetDecoder] = None,
        *,
        default_charset: str = policy.DEFAULT_CHARSET,
        decompress: bool = True,
    ) -> None:
        self.codecs = codecs_ if codecs_ is not None else default_codec_registry()
        self.charsets = charsets if charsets is not None else CharsetDecoder()
        self.default_charset = default_charset
        self.decompress = decompress

    def decoders_for(self, headers: HeaderMap) -> List[Decoder]:
        """Return decoders in the order they must be applied.

        Raises:
            UnsupportedCompression: if a listed coding has no registered codec.
        """
        if not self.decompress:
            return []
        codings = parse_content_encoding(headers.get("content-encoding"))
        decoders = []
        for coding in reversed(codings):
            codec = self.codecs.get(coding)
            if codec is None:
                raise UnsupportedCompression(coding)
            decoders.append(codec.decoder())
        return decoders

    def is_encoded(self, headers: HeaderMap) -> bool:
        return self.decompress and bool(parse_content_encoding(headers.get("content-encoding")))

    async def decode_stream(
        self,
        headers: HeaderMap,
        chunks: AsyncIterator[bytes],
        *,
        decoders: Optional[List[Decoder]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield decoded chunks of ``chunks``.

        Pass ``decoders`` already obtained from :meth:`decoders_for` to fail on
        unsupported codings before the stream is touched.
        """
        if decoders is None:
            decoders = self.decoders_for(headers)
        if not decoders:
            async for chunk in chunks:
                yield chunk
            return
        async for chunk in chunks:
            for decoder in decoders:
                chunk = decoder.decode(chunk)
            if chunk:
                yield chunk
        tail = b""
        for decoder in decoders:
            if tail:
                tail = decoder.decode(tail)
            tail += decoder.flush()
        if tail:
            yield tail

    def charset_for(self, headers: HeaderMap, data: bytes = b"") -> str:
        """Pick the charset label for ``data``.

        Order: ``charset`` parameter of ``Content-Type``, byte-order mark,
        UTF-8 for JSON media types, then the configured default.
        """
        content_type = parse_content_type(headers.get("content-type"))
        if content_type is not None and content_type.charset:
            return content_type.charset
        sniffed = self.charsets.sniff(data)
        if sniffed is not None:
            return sniffed
        if content_type is not None and content_type.is_json:
            return "utf-8"
        return self.default_charset

    def decode_text(
        self,
        headers: HeaderMap,
        data: bytes,
        *,
        charset: Optional[str] = None,
        lossy: bool = False,
    ) -> str:
        label = charset or self.charset_for(headers, data)
        logger.debug("Decoding response text", extra={"charset": label, "bytes": len(data)})
        return self.charsets.decode(data, label, lossy=lossy)
