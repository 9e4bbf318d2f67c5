"""Retry-aware streaming fetcher.

Performs one HTTP request with bounded retries and delivers every complete
line of the response body to a callback, in order, exactly once.  It knows
nothing about any provider's payload shape.

Line-handler contract:
  * lines are delivered without their terminating ``\\n`` (or ``\\r\\n``);
  * blank lines are never delivered;
  * a non-empty unterminated fragment left at stream end is **flushed**
    to the handler as a final line.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from peik.cancellation import CancellationToken
from peik.config import FetchConfig
from peik.errors import PeikError, ProviderError, TransientNetworkError

_logger = logging.getLogger(__name__)

# Retry configuration
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4

# Client errors that will not change on retry
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404})

LineHandler = Callable[[str], None]
ErrorExtractor = Callable[[httpx.Response], str]


class LineBuffer:
    """Incremental newline splitter for decoded response text."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        """Add *text*; return all lines it completed."""
        self._buffer += text
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return [p.rstrip("\r") for p in parts if p.strip()]

    def flush(self) -> list[str]:
        """Return the trailing fragment (if any) and reset."""
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return [rest] if rest.strip() else []


def make_http_client(fetch: FetchConfig | None = None) -> httpx.AsyncClient:
    """Build the shared ``httpx.AsyncClient`` used by provider handlers."""
    fetch = fetch or FetchConfig()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            fetch.read_timeout, connect=fetch.connect_timeout, read=fetch.read_timeout,
        ),
    )


async def fetch_stream_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    on_line: LineHandler,
    error_message: ErrorExtractor,
    method: str = "POST",
    json: Any = None,
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
    token: CancellationToken | None = None,
    max_retries: int = _MAX_RETRIES,
    backoff_base: float = _BACKOFF_BASE,
) -> None:
    """Stream *url* line by line into *on_line*.

    Raises
    ------
    ProviderError
        Non-retryable status (400/401/403/404); raised on the first attempt.
    TransientNetworkError
        Retryable failure persisted through every attempt, or the
        connection broke after lines had already been delivered.
    OperationCancelled
        *token* fired.  Never retried, never wrapped.
    """
    token = token or CancellationToken()
    delivered = False
    last_error: PeikError | None = None

    async def _attempt() -> None:
        nonlocal delivered
        async with client.stream(
            method, url, json=json, headers=headers, params=params,
        ) as resp:
            if not resp.is_success:
                await resp.aread()
                message = error_message(resp)
                if resp.status_code in NON_RETRYABLE_STATUSES:
                    raise ProviderError(message, resp.status_code)
                raise TransientNetworkError(message, resp.status_code)

            buffer = LineBuffer()
            async for text in resp.aiter_text():
                for line in buffer.feed(text):
                    token.raise_if_cancelled()
                    on_line(line)
                    delivered = True
            for line in buffer.flush():
                token.raise_if_cancelled()
                on_line(line)
                delivered = True

    for attempt in range(max_retries):
        try:
            await token.run(_attempt())
            return
        except TransientNetworkError as e:
            last_error = e
            _logger.warning(
                "Stream returned %s (attempt %d/%d): %s",
                e.status, attempt + 1, max_retries, e,
            )
        except httpx.TransportError as e:
            if delivered:
                # Retrying now would deliver lines twice.
                raise TransientNetworkError(f"Stream interrupted: {e}") from e
            last_error = TransientNetworkError()
            _logger.warning(
                "Stream connection error (attempt %d/%d): %s",
                attempt + 1, max_retries, e,
            )

        if attempt < max_retries - 1:
            await token.sleep(backoff_base * (2 ** attempt))

    raise last_error or TransientNetworkError("Exhausted retries")
