"""Streaming fetcher and provider adapters for Peik."""

from peik.llm.fetcher import LineBuffer, fetch_stream_with_retries, make_http_client
from peik.llm.providers import (
    CustomAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    ProviderHandler,
    StreamingHandler,
    create_provider_handlers,
    status_message,
)

__all__ = [
    "CustomAdapter",
    "GeminiAdapter",
    "LineBuffer",
    "OpenAIAdapter",
    "ProviderHandler",
    "StreamingHandler",
    "create_provider_handlers",
    "fetch_stream_with_retries",
    "make_http_client",
    "status_message",
]
