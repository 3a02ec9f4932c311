"""Tests for response consumption, decompression, charset decoding, and header helpers."""

from __future__ import annotations

import codecs
import gzip
import zlib
from datetime import datetime, timezone

import brotli
import httpx
import pytest
from pydantic import BaseModel

from ReqFlow.errors import (
    AlreadyConsumed,
    CharsetDecodeFailed,
    DecodeError,
    DecompressionFailed,
    SizeLimitExceeded,
    StorageWriteFailed,
    UnsupportedCompression,
)
from ReqFlow.request import RequestBuilder
from ReqFlow.testing import canned_response, mock_client


def _serve(run, status=200, headers=None, content=b"", consume=None, **settings):
    """Execute one GET against a canned response and apply ``consume`` to it."""

    def handler(request: httpx.Request) -> httpx.Response:
        return canned_response(status, headers=headers or {}, content=content)

    async def scenario():
        async with mock_client(handler, **settings) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/r").empty())
            try:
                return response, await consume(response)
            finally:
                await response.aclose()

    return run(scenario())


def _raw_deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


class TestConsumption:
    def test_second_consumption_raises(self, run):
        async def twice(response):
            first = await response.to_bytes()
            with pytest.raises(AlreadyConsumed):
                await response.to_bytes()
            with pytest.raises(AlreadyConsumed):
                await response.to_text()
            return first

        _, body = _serve(run, content=b"payload", consume=twice)
        assert body == b"payload"

    def test_stream_then_buffer_raises(self, run):
        async def mixed(response):
            chunks = [chunk async for chunk in response.aiter_bytes()]
            with pytest.raises(AlreadyConsumed):
                await response.raw_bytes()
            return b"".join(chunks)

        _, body = _serve(run, content=b"abc", consume=mixed)
        assert body == b"abc"

    def test_size_limit_keeps_partial(self, run):
        async def consume(response):
            with pytest.raises(SizeLimitExceeded) as excinfo:
                await response.to_bytes()
            return excinfo.value

        _, error = _serve(run, content=b"x" * 100, consume=consume, max_body_bytes=10)
        assert error.limit == 10
        assert len(error.partial) > 10

    def test_progress_reported_for_buffered_reads(self, run):
        seen = []

        async def consume(response):
            return await response.to_bytes(on_progress=lambda done, total: seen.append((done, total)))

        _serve(run, content=b"12345", consume=consume)
        assert seen[-1] == (5, 5)

    def test_closed_response_cannot_be_read(self, run):
        async def consume(response):
            await response.aclose()
            assert response.is_consumed
            with pytest.raises(AlreadyConsumed):
                await response.to_bytes()
            with pytest.raises(AlreadyConsumed):
                await response.raw_bytes()
            return None

        _serve(run, content=b"payload", consume=consume)

    def test_failed_file_open_consumes_body(self, run, tmp_path):
        class _DeniedStorage:
            async def create_or_truncate(self, path):
                raise PermissionError(13, "Permission denied", str(path))

        async def consume(response):
            with pytest.raises(StorageWriteFailed):
                await response.to_file(tmp_path / "out.bin", storage=_DeniedStorage())
            with pytest.raises(AlreadyConsumed):
                await response.to_bytes()
            return None

        _serve(run, content=b"payload", consume=consume)


class TestDecompression:
    @pytest.mark.parametrize(
        "encoding, encode",
        [
            ("gzip", gzip.compress),
            ("x-gzip", gzip.compress),
            ("deflate", zlib.compress),
            ("deflate", _raw_deflate),
            ("br", brotli.compress),
            ("identity", lambda data: data),
        ],
    )
    def test_codings_are_decoded(self, run, encoding, encode):
        payload = b"compressible " * 50

        async def consume(response):
            return await response.to_bytes()

        _, body = _serve(
            run, headers={"Content-Encoding": encoding}, content=encode(payload), consume=consume
        )
        assert body == payload

    def test_stacked_codings_decode_in_reverse(self, run):
        payload = b"layered"
        wire = gzip.compress(zlib.compress(payload))

        async def consume(response):
            return await response.to_bytes()

        _, body = _serve(
            run, headers={"Content-Encoding": "deflate, gzip"}, content=wire, consume=consume
        )
        assert body == payload

    def test_unsupported_coding_keeps_raw_bytes_available(self, run):
        async def consume(response):
            with pytest.raises(UnsupportedCompression) as excinfo:
                await response.to_bytes()
            assert excinfo.value.encoding == "zstd"
            return await response.raw_bytes()

        _, raw = _serve(run, headers={"Content-Encoding": "zstd"}, content=b"\x28\xb5", consume=consume)
        assert raw == b"\x28\xb5"

    def test_corrupt_gzip_raises(self, run):
        async def consume(response):
            with pytest.raises(DecompressionFailed) as excinfo:
                await response.to_bytes()
            return excinfo.value

        _, error = _serve(run, headers={"Content-Encoding": "gzip"}, content=b"not gzip at all", consume=consume)
        assert error.encoding == "gzip"
        assert error.raw == b"not gzip at all"

    def test_concatenated_gzip_members(self, run):
        async def consume(response):
            return await response.to_bytes()

        _, body = _serve(
            run,
            headers={"Content-Encoding": "gzip"},
            content=gzip.compress(b"hello ") + gzip.compress(b"world"),
            consume=consume,
        )
        assert body == b"hello world"

    @pytest.mark.parametrize(
        "encoding, encode",
        [("gzip", gzip.compress), ("deflate", zlib.compress), ("br", brotli.compress)],
    )
    def test_truncated_stream_raises(self, run, encoding, encode):
        wire = encode(b"x" * 5000)

        async def consume(response):
            with pytest.raises(DecompressionFailed) as excinfo:
                await response.to_bytes()
            return excinfo.value

        _, error = _serve(
            run, headers={"Content-Encoding": encoding}, content=wire[: len(wire) // 2], consume=consume
        )
        assert error.encoding == encoding
        assert error.raw == wire[: len(wire) // 2]

    def test_empty_encoded_body(self, run):
        async def consume(response):
            return await response.to_bytes()

        _, body = _serve(run, headers={"Content-Encoding": "gzip"}, content=b"", consume=consume)
        assert body == b""

    def test_raw_bytes_skip_decoding(self, run):
        wire = gzip.compress(b"data")

        async def consume(response):
            return await response.raw_bytes()

        _, raw = _serve(run, headers={"Content-Encoding": "gzip"}, content=wire, consume=consume)
        assert raw == wire

    def test_decompress_disabled_returns_wire_bytes(self, run):
        wire = gzip.compress(b"data")

        async def consume(response):
            return await response.to_bytes()

        _, body = _serve(
            run,
            headers={"Content-Encoding": "gzip"},
            content=wire,
            consume=consume,
            decompress=False,
        )
        assert body == wire


class TestCharsets:
    def _text(self, run, content, content_type=None, **kwargs):
        headers = {"Content-Type": content_type} if content_type else {}

        async def consume(response):
            return await response.to_text(**kwargs)

        return _serve(run, headers=headers, content=content, consume=consume)[1]

    def test_declared_charset(self, run):
        assert self._text(run, b"caf\xe9", "text/plain; charset=ISO-8859-1") == "café"

    def test_default_is_utf8(self, run):
        assert self._text(run, "héllo".encode("utf-8")) == "héllo"

    def test_bom_sniffed_without_declaration(self, run):
        assert self._text(run, "hi".encode("utf-16"), "text/plain") == "hi"

    def test_declared_utf8_drops_bom(self, run):
        content = codecs.BOM_UTF8 + "héllo".encode("utf-8")
        assert self._text(run, content, "text/plain; charset=utf-8") == "héllo"

    def test_override_wins(self, run):
        assert self._text(run, b"caf\xe9", "text/plain; charset=utf-8", charset="latin-1") == "café"

    def test_invalid_bytes_raise_with_raw(self, run):
        async def consume(response):
            with pytest.raises(CharsetDecodeFailed) as excinfo:
                await response.to_text()
            return excinfo.value

        _, error = _serve(
            run,
            headers={"Content-Type": "text/plain; charset=utf-8"},
            content=b"caf\xe9",
            consume=consume,
        )
        assert error.raw == b"caf\xe9"
        assert error.charset == "utf-8"

    def test_lossy_substitutes(self, run):
        text = self._text(run, b"caf\xe9", "text/plain; charset=utf-8", lossy=True)
        assert text == "caf�"

    def test_unknown_charset_raises(self, run):
        async def consume(response):
            with pytest.raises(CharsetDecodeFailed):
                await response.to_text()
            return None

        _serve(run, headers={"Content-Type": "text/plain; charset=x-unknown"}, content=b"a", consume=consume)


class Item(BaseModel):
    id: int
    name: str


class TestStructured:
    def test_plain_json(self, run):
        async def consume(response):
            return await response.to_structured()

        _, value = _serve(
            run,
            headers={"Content-Type": "application/json"},
            content=b'{"id": 1, "tags": ["a"]}',
            consume=consume,
        )
        assert value == {"id": 1, "tags": ["a"]}

    def test_model_validation(self, run):
        async def consume(response):
            return await response.to_structured(Item)

        _, value = _serve(run, content=b'{"id": 7, "name": "seven"}', consume=consume)
        assert value == Item(id=7, name="seven")

    def test_invalid_json_raises_decode_error(self, run):
        async def consume(response):
            with pytest.raises(DecodeError):
                await response.to_structured()
            return None

        _serve(run, content=b"{not json", consume=consume)

    def test_model_mismatch_raises_decode_error(self, run):
        async def consume(response):
            with pytest.raises(DecodeError):
                await response.to_structured(Item)
            return None

        _serve(run, content=b'{"id": "x"}', consume=consume)


class TestHeaderHelpers:
    def _headers(self, run, headers):
        async def consume(response):
            return None

        def handler(request):
            return canned_response(200, headers=headers)

        async def scenario():
            async with mock_client(handler) as client:
                response = await client.execute(RequestBuilder.get("https://example.org/").empty())
                await response.aclose()
                return response

        return run(scenario())

    def test_cookies(self, run):
        response = self._headers(
            run,
            [
                ("Set-Cookie", "session=abc; Path=/; HttpOnly"),
                ("Set-Cookie", "theme=dark; Secure; Max-Age=60; Domain=.Example.org"),
                ("Set-Cookie", "malformed"),
                ("Set-Cookie", "session=def"),
            ],
        )
        cookies = response.cookies()
        assert [cookie.name for cookie in cookies] == ["session", "theme", "session"]
        assert cookies[0].path == "/"
        assert cookies[0].http_only is True
        assert cookies[1].secure is True
        assert cookies[1].max_age == 60
        assert cookies[1].domain == "example.org"
        assert response.cookie_jar()["session"].value == "def"

    def test_validators(self, run):
        response = self._headers(
            run,
            {"ETag": 'W/"v42"', "Last-Modified": "Wed, 21 Oct 2015 07:28:00 GMT"},
        )
        etag = response.etag()
        assert etag.tag == "v42"
        assert etag.weak is True
        assert response.last_modified() == datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc)

    def test_content_metadata(self, run):
        response = self._headers(
            run,
            {
                "Content-Type": "text/html; charset=UTF-8",
                "Content-Disposition": "attachment; filename=\"plain.txt\"; filename*=UTF-8''na%C3%AFve.txt",
                "Content-Encoding": "gzip",
            },
        )
        assert response.mime() == "text/html"
        assert response.charset() == "utf-8"
        assert response.content_encoding() == ["gzip"]
        disposition = response.content_disposition()
        assert disposition.is_attachment
        assert disposition.filename == "naïve.txt"

    def test_missing_headers_are_none(self, run):
        response = self._headers(run, {})
        assert response.etag() is None
        assert response.last_modified() is None
        assert response.content_type() is None
        assert response.content_disposition() is None
        assert response.cookies() == []

    def test_status_predicates(self, run):
        response = self._headers(run, {})
        assert response.is_success
        assert not response.is_error
        assert not response.is_redirect
