"""Tests for the retry-aware streaming fetcher, with mocked httpx transports."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import BrokenStream
from peik.cancellation import CancellationToken, OperationCancelled
from peik.errors import ProviderError, TransientNetworkError
from peik.llm.fetcher import (
    _BACKOFF_BASE,
    _MAX_RETRIES,
    LineBuffer,
    fetch_stream_with_retries,
)

URL = "http://test/v1/chat/completions"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Server:
    """MockTransport handler that replays a scripted list of responses."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        status, body = step
        if isinstance(body, httpx.AsyncByteStream):
            return httpx.Response(status, stream=body)
        return httpx.Response(status, content=body)


def _client(server: Server) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(server))


def _status_text(resp: httpx.Response) -> str:
    return f"status {resp.status_code}"


async def _fetch(server: Server, lines: list[str], **kwargs) -> None:
    async with _client(server) as client:
        await fetch_stream_with_retries(
            client, URL, on_line=lines.append, error_message=_status_text,
            json={"hello": "world"}, **kwargs,
        )


# ---------------------------------------------------------------------------
# LineBuffer
# ---------------------------------------------------------------------------

class TestLineBuffer:
    def test_split_across_feeds(self):
        buf = LineBuffer()
        assert buf.feed("data: a\nda") == ["data: a"]
        assert buf.feed("ta: b\n") == ["data: b"]

    def test_blank_lines_skipped(self):
        buf = LineBuffer()
        assert buf.feed("\n\n  \ndata: x\n\n") == ["data: x"]

    def test_crlf_stripped(self):
        assert LineBuffer().feed("data: x\r\n") == ["data: x"]

    def test_flush_trailing_fragment(self):
        buf = LineBuffer()
        buf.feed("data: a\ndata: tail")
        assert buf.flush() == ["data: tail"]
        assert buf.flush() == []

    def test_flush_blank_fragment(self):
        buf = LineBuffer()
        buf.feed("data: a\n  ")
        assert buf.flush() == []


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStreaming:
    async def test_lines_delivered_in_order(self):
        server = Server((200, b"data: a\n\ndata: b\r\ndata: c"))
        lines: list[str] = []

        await _fetch(server, lines)

        assert lines == ["data: a", "data: b", "data: c"]
        assert len(server.requests) == 1
        assert server.requests[0].method == "POST"
        assert json.loads(server.requests[0].read()) == {"hello": "world"}

    async def test_headers_and_params_sent(self):
        server = Server((200, b"ok\n"))
        await _fetch(server, [], headers={"Authorization": "Bearer k"},
                     params={"alt": "sse"})

        request = server.requests[0]
        assert request.headers["Authorization"] == "Bearer k"
        assert request.url.params["alt"] == "sse"


class TestRetry:
    def test_defaults(self):
        assert _MAX_RETRIES == 3
        assert _BACKOFF_BASE == 1

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    async def test_non_retryable_status_single_attempt(self, status):
        server = Server((status, b'{"error": "nope"}'))

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ProviderError) as exc:
                await _fetch(server, [])

        assert len(server.requests) == 1
        assert exc.value.status == status
        assert exc.value.message == f"status {status}"
        sleep.assert_not_awaited()

    async def test_retryable_status_exhausts_with_backoff(self):
        server = Server((500, b""))

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(TransientNetworkError) as exc:
                await _fetch(server, [])

        assert len(server.requests) == 3
        assert exc.value.status == 500
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [1, 2]

    async def test_recovers_after_transient_failure(self):
        server = Server((503, b""), (429, b""), (200, b"data: ok\n"))
        lines: list[str] = []

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock):
            await _fetch(server, lines)

        assert lines == ["data: ok"]
        assert len(server.requests) == 3

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("refused"),
        httpx.ConnectTimeout("timed out"),
        httpx.ReadError("reset"),
    ])
    async def test_connection_error_is_retried(self, error):
        server = Server(error)

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock):
            with pytest.raises(TransientNetworkError):
                await _fetch(server, [])

        assert len(server.requests) == 3

    async def test_custom_retry_bound(self):
        server = Server((502, b""))

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(TransientNetworkError):
                await _fetch(server, [], max_retries=5, backoff_base=0.5)

        assert len(server.requests) == 5
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 2.0, 4.0]

    async def test_break_before_any_line_is_retried(self):
        server = Server((200, BrokenStream()), (200, b"data: ok\n"))
        lines: list[str] = []

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock):
            await _fetch(server, lines)

        assert lines == ["data: ok"]
        assert len(server.requests) == 2

    async def test_break_after_lines_is_not_retried(self):
        server = Server((200, BrokenStream(b"data: a\ndata: b\n")), (200, b"data: again\n"))
        lines: list[str] = []

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(TransientNetworkError) as exc:
                await _fetch(server, lines)

        assert lines == ["data: a", "data: b"]
        assert len(server.requests) == 1
        assert "connection reset by peer" in exc.value.message
        sleep.assert_not_awaited()

    async def test_line_handler_error_propagates_unretried(self):
        server = Server((200, b"data: a\n"))

        def on_line(line):
            raise ValueError("bad line")

        with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ValueError):
                async with _client(server) as client:
                    await fetch_stream_with_retries(
                        client, URL, on_line=on_line, error_message=_status_text,
                    )

        assert len(server.requests) == 1
        sleep.assert_not_awaited()


class TestCancellation:
    async def test_cancelled_before_start(self):
        server = Server((200, b"data: a\n"))
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await _fetch(server, [], token=token)

        assert server.requests == []

    async def test_cancel_at_line_boundary(self):
        server = Server((200, b"data: a\ndata: b\ndata: c\n"))
        token = CancellationToken()
        lines: list[str] = []

        def on_line(line: str) -> None:
            lines.append(line)
            token.cancel("user")

        async with _client(server) as client:
            with pytest.raises(OperationCancelled):
                await fetch_stream_with_retries(
                    client, URL, on_line=on_line, error_message=_status_text,
                    token=token,
                )

        assert lines == ["data: a"]
        assert len(server.requests) == 1

    async def test_cancel_during_backoff(self):
        server = Server((500, b""))
        token = CancellationToken()

        async def cancel_instead_of_sleeping(delay):
            token.cancel("user")
            token.raise_if_cancelled()

        with patch.object(CancellationToken, "sleep", side_effect=cancel_instead_of_sleeping):
            with pytest.raises(OperationCancelled):
                await _fetch(server, [], token=token)

        assert len(server.requests) == 1
