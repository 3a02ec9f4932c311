"""HTTPX MockTransport-based coverage for Client.execute."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from ReqFlow.errors import (
    ConnectionRefused,
    InvalidLocation,
    Timeout,
    TlsHandshakeFailed,
    TooManyRedirects,
    TransportError,
)
from ReqFlow.request import RequestBuilder
from ReqFlow.testing import ResponseSpec, canned_response, mock_client


def test_scenario_identity_body(responses, run):
    """A 200 with identity encoding yields the body bytes unchanged."""
    responses.add(
        "https://example.org/hello",
        status=200,
        headers={"Content-Encoding": "identity"},
        body=b"hello",
    )

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/hello").empty())
            return response.status, await response.to_bytes()

    assert run(scenario()) == (200, b"hello")


def test_scenario_single_redirect(responses, run):
    """A 302 to /target is followed once and the final body returned."""
    responses.add("https://example.org/start", status=302, headers={"Location": "/target"})
    responses.add("https://example.org/target", status=200, body="done")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/start").empty())
            return response, await response.to_bytes()

    response, body = run(scenario())
    assert response.status == 200
    assert body == b"done"
    assert response.redirect_count == 1
    assert response.history == [("https://example.org/start", 302)]
    assert str(response.url) == "https://example.org/target"
    assert [record.url for record in responses.requests] == [
        "https://example.org/start",
        "https://example.org/target",
    ]


@pytest.mark.parametrize("limit", [0, 1, 3])
def test_redirect_limit_stops_before_extra_request(run, limit):
    """With max_redirects=N exactly N+1 requests are sent before failing."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return canned_response(302, headers={"Location": "/loop"})

    async def scenario():
        async with mock_client(handler, max_redirects=limit) as client:
            await client.execute(RequestBuilder.get("https://example.org/start").empty())

    with pytest.raises(TooManyRedirects):
        run(scenario())
    assert len(calls) == limit + 1


def test_per_request_limit_overrides_settings(responses, run):
    for _ in range(3):
        responses.add(None, status=301, headers={"Location": "https://example.org/next"})

    async def scenario():
        async with mock_client(responses, max_redirects=10) as client:
            await client.execute(
                RequestBuilder.get("https://example.org/").max_redirects(1).empty()
            )

    with pytest.raises(TooManyRedirects):
        run(scenario())
    assert len(responses.requests) == 2


def test_follow_disabled_returns_redirect(responses, run):
    responses.add("https://example.org/start", status=302, headers={"Location": "/target"})

    async def scenario():
        async with mock_client(responses, follow_redirects=False) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/start").empty())
            await response.aclose()
            return response

    response = run(scenario())
    assert response.status == 302
    assert response.redirect_count == 0
    assert len(responses.requests) == 1


def test_307_resends_method_and_body(responses, run):
    responses.add("https://example.org/old", status=307, headers={"Location": "/new"})
    responses.add("https://example.org/new", status=201, body=b"created")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(
                RequestBuilder.post("https://example.org/old").bytes(b"payload")
            )
            return await response.to_bytes()

    assert run(scenario()) == b"created"
    first, second = responses.requests
    assert second.method == "POST"
    assert second.body == b"payload"
    assert second.headers["content-length"] == "7"


def test_303_switches_to_bodyless_get(responses, run):
    responses.add("https://example.org/form", status=303, headers={"Location": "/result"})
    responses.add("https://example.org/result", status=200, body=b"ok")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(
                RequestBuilder.post("https://example.org/form").form({"a": "1"})
            )
            return await response.to_bytes()

    assert run(scenario()) == b"ok"
    second = responses.requests[1]
    assert second.method == "GET"
    assert second.body == b""
    assert "content-length" not in second.headers
    assert "content-type" not in second.headers


def test_cross_host_redirect_drops_authorization(responses, run):
    responses.add(
        "https://api.example.org/file",
        status=302,
        headers={"Location": "https://cdn.example.net/file"},
    )
    responses.add("https://cdn.example.net/file", status=200, body=b"bytes")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(
                RequestBuilder.get("https://api.example.org/file").bearer_auth("token").empty()
            )
            await response.aclose()

    run(scenario())
    first, second = responses.requests
    assert first.headers["authorization"] == "Bearer token"
    assert "authorization" not in second.headers


def test_invalid_location_surfaces(responses, run):
    responses.add("https://example.org/start", status=302)

    async def scenario():
        async with mock_client(responses) as client:
            await client.execute(RequestBuilder.get("https://example.org/start").empty())

    with pytest.raises(InvalidLocation):
        run(scenario())


def test_default_headers_applied(responses, run):
    responses.add(None, status=204)

    async def scenario():
        async with mock_client(responses, default_headers={"X-Client": "tests"}) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/").empty())
            await response.aclose()

    run(scenario())
    headers = responses.requests[0].headers
    assert headers["user-agent"].startswith("ReqFlow/")
    assert headers["accept-encoding"] == "gzip, deflate, br"
    assert headers["x-client"] == "tests"


def test_request_headers_override_defaults(responses, run):
    responses.add(None, status=204)

    async def scenario():
        async with mock_client(responses, decompress=False) as client:
            response = await client.execute(
                RequestBuilder.get("https://example.org/").header("User-Agent", "custom/1").empty()
            )
            await response.aclose()

    run(scenario())
    headers = responses.requests[0].headers
    assert headers["user-agent"] == "custom/1"
    assert "accept-encoding" not in headers


def test_extensions_carried_to_response(responses, run):
    responses.add(None, status=200, body=b"")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(
                RequestBuilder.get("https://example.org/").extension("trace", "t-1").empty()
            )
            await response.aclose()
            return response

    assert run(scenario()).extensions["trace"] == "t-1"


def test_request_timeout_raises_timeout(run):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return canned_response(200)

    async def scenario():
        async with mock_client(slow, request_timeout=0.05) as client:
            await client.execute(RequestBuilder.get("https://example.org/slow").empty())

    with pytest.raises(Timeout):
        run(scenario())


def test_per_request_timeout(run):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return canned_response(200)

    async def scenario():
        async with mock_client(slow, request_timeout=60) as client:
            await client.execute(
                RequestBuilder.get("https://example.org/slow").timeout(0.05).empty()
            )

    with pytest.raises(Timeout):
        run(scenario())


class _TrackedStream(httpx.AsyncByteStream):
    def __init__(self, content: bytes) -> None:
        self.content = content
        self.closed = False

    async def __aiter__(self):
        yield self.content

    async def aclose(self) -> None:
        self.closed = True


def _redirect_then_stall(first_stream, second_hop_started):
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/start":
            return httpx.Response(
                302,
                headers={"Location": "/stalled", "Content-Length": str(len(first_stream.content))},
                stream=first_stream,
            )
        second_hop_started.set()
        await asyncio.sleep(5)
        return canned_response(200)

    return handler


def test_deadline_during_later_hop_releases_earlier_response(run):
    first_stream = _TrackedStream(b"moved")

    async def scenario():
        handler = _redirect_then_stall(first_stream, asyncio.Event())
        async with mock_client(handler, request_timeout=0.1) as client:
            await client.execute(RequestBuilder.get("https://example.org/start").empty())

    with pytest.raises(Timeout):
        run(scenario())
    assert first_stream.closed


def test_cancellation_during_later_hop_releases_earlier_response(run):
    first_stream = _TrackedStream(b"moved")

    async def scenario():
        second_hop_started = asyncio.Event()
        handler = _redirect_then_stall(first_stream, second_hop_started)
        async with mock_client(handler) as client:
            task = asyncio.create_task(
                client.execute(RequestBuilder.get("https://example.org/start").empty())
            )
            await second_hop_started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    run(scenario())
    assert first_stream.closed


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ConnectError("Connection refused"), ConnectionRefused),
        (
            httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"),
            TlsHandshakeFailed,
        ),
        (httpx.ReadTimeout("read timed out"), Timeout),
        (httpx.RemoteProtocolError("peer closed connection"), TransportError),
    ],
)
def test_transport_failures_are_translated(run, exc, expected):
    """Transport failures surface once, translated, without retries."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise exc

    async def scenario():
        async with mock_client(handler) as client:
            await client.execute(RequestBuilder.get("https://example.org/").empty())

    with pytest.raises(expected) as excinfo:
        run(scenario())
    assert excinfo.value.__cause__ is exc
    assert len(calls) == 1


def test_concurrent_executes_share_client(run):
    def handler(request: httpx.Request) -> httpx.Response:
        return canned_response(200, content=request.url.path.encode("ascii"))

    async def scenario():
        async with mock_client(handler) as client:

            async def fetch(index: int) -> bytes:
                response = await client.execute(
                    RequestBuilder.get(f"https://example.org/item/{index}").empty()
                )
                return await response.to_bytes()

            return await asyncio.gather(*(fetch(index) for index in range(5)))

    assert run(scenario()) == [f"/item/{index}".encode("ascii") for index in range(5)]


def test_verb_helpers(responses, run):
    responses.add(None, ResponseSpec(status=200, body={"ok": True}))

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.post(
                "https://example.org/items", json={"id": 1}, query={"dry": "1"}
            )
            return await response.to_structured()

    assert run(scenario()) == {"ok": True}
    record = responses.requests[0]
    assert record.method == "POST"
    assert record.url == "https://example.org/items?dry=1"
    assert record.body == b'{"id": 1}'


def test_redirect_hops_logged(responses, run, caplog):
    responses.add("https://example.org/a", status=301, headers={"Location": "/b"})
    responses.add("https://example.org/b", status=200)
    caplog.set_level(logging.DEBUG, logger="ReqFlow")

    async def scenario():
        async with mock_client(responses) as client:
            response = await client.execute(RequestBuilder.get("https://example.org/a").empty())
            await response.aclose()

    run(scenario())
    hops = [record for record in caplog.records if record.message == "Following redirect"]
    assert len(hops) == 1
    assert getattr(hops[0], "status") == 301
    assert getattr(hops[0], "hop") == 1
