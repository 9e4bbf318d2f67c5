"""Provider adapters and the streaming handlers built from them.

Each adapter is a set of pure translations for one backend family:

* ``build_request`` -- message history -> wire body (with system prompt)
* ``parse_line``    -- one streamed line -> text chunk or ``None``
* ``error_message`` -- non-2xx response -> human-readable text

``StreamingHandler`` binds an adapter to the retry-aware fetcher and
satisfies the ``ProviderHandler`` contract the dispatcher calls.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Protocol

import httpx

from peik.cancellation import CancellationToken
from peik.config import (
    CUSTOM_PROVIDER,
    DEFAULT_SYSTEM_PROMPT,
    EngineConfig,
    ProviderConfig,
)
from peik.types import Message, Role

from .fetcher import _BACKOFF_BASE, _MAX_RETRIES, fetch_stream_with_retries

_logger = logging.getLogger(__name__)

_STATUS_MESSAGES = {
    400: "The request was invalid. Please check your input.",
    401: "The API key is invalid or has expired. Please check it.",
    403: "Access to this model or service is not allowed. Check your API key.",
    404: "The requested model or endpoint was not found.",
    429: "Too many requests. Please wait a minute and try again.",
    500: "The server ran into a problem. Please try again shortly.",
    503: "The server ran into a problem. Please try again shortly.",
}


def status_message(status: int) -> str:
    """Translate an HTTP status code into a user-facing message."""
    return _STATUS_MESSAGES.get(
        status, f"An unexpected error occurred. (code: {status})",
    )


def structured_error_message(response: httpx.Response) -> str:
    """Read ``{"error": {"message": ...}}`` if present, else the status text."""
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return status_message(response.status_code)
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return status_message(response.status_code)


def _sse_payload(line: str) -> dict[str, Any] | None:
    """Decode a ``data: <json>`` line; ``None`` for anything else."""
    if not line.startswith("data: "):
        return None
    body = line[6:].strip()
    if not body or body == "[DONE]":
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        _logger.debug("Ignoring malformed stream line: %.80s", line)
        return None
    return data if isinstance(data, dict) else None


def _has_image(msg: Message) -> bool:
    return msg.image is not None and msg.image.is_well_formed()


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------

def build_openai_request(
    history: list[Message], model: str, system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> dict[str, Any]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in history:
        if msg.role == Role.USER and _has_image(msg):
            content: list[dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:{msg.image.mime_type};base64,{msg.image.data}",
                },
            })
            messages.append({"role": "user", "content": content})
        else:
            messages.append({
                "role": "assistant" if msg.role == Role.MODEL else "user",
                "content": msg.content,
            })
    return {"model": model, "messages": messages, "stream": True}


def parse_openai_line(line: str) -> str | None:
    data = _sse_payload(line)
    if data is None:
        return None
    try:
        content = data["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content or None


class OpenAIAdapter:
    """OpenAI chat completions (``/v1/chat/completions``)."""

    name = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def endpoint(self, config: ProviderConfig) -> str:
        return self.url

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }

    def params(self, config: ProviderConfig) -> dict[str, str] | None:
        return None

    def build_request(
        self, history: list[Message], config: ProviderConfig, system_prompt: str,
    ) -> dict[str, Any]:
        return build_openai_request(history, config.model_name, system_prompt)

    def parse_line(self, line: str) -> str | None:
        return parse_openai_line(line)

    def error_message(self, response: httpx.Response) -> str:
        return structured_error_message(response)


class CustomAdapter:
    """Any OpenAI-compatible endpoint configured by the user."""

    name = CUSTOM_PROVIDER

    def endpoint(self, config: ProviderConfig) -> str:
        return config.endpoint_url

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def params(self, config: ProviderConfig) -> dict[str, str] | None:
        return None

    def build_request(
        self, history: list[Message], config: ProviderConfig, system_prompt: str,
    ) -> dict[str, Any]:
        return build_openai_request(history, config.model_name, system_prompt)

    def parse_line(self, line: str) -> str | None:
        return parse_openai_line(line)

    def error_message(self, response: httpx.Response) -> str:
        return structured_error_message(response)


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------

class GeminiAdapter:
    """Gemini ``streamGenerateContent`` over SSE."""

    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def endpoint(self, config: ProviderConfig) -> str:
        return f"{self.base_url}/{config.model_name}:streamGenerateContent"

    def headers(self, config: ProviderConfig) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def params(self, config: ProviderConfig) -> dict[str, str] | None:
        return {"key": config.api_key, "alt": "sse"}

    def build_request(
        self, history: list[Message], config: ProviderConfig, system_prompt: str,
    ) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        for msg in history:
            parts: list[dict[str, Any]] = []
            if msg.role == Role.USER:
                # Text part must precede the image part
                if msg.content:
                    parts.append({"text": msg.content})
                if _has_image(msg):
                    parts.append({
                        "inlineData": {
                            "mimeType": msg.image.mime_type,
                            "data": msg.image.data,
                        },
                    })
            else:
                parts.append({"text": msg.content})
            if parts:
                contents.append({
                    "role": "model" if msg.role == Role.MODEL else "user",
                    "parts": parts,
                })
        return {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": system_prompt}]},
        }

    def parse_line(self, line: str) -> str | None:
        data = _sse_payload(line)
        if data is None:
            return None
        try:
            text = data["candidates"][0]["content"]["parts"][0].get("text")
        except (KeyError, IndexError, TypeError, AttributeError):
            return None
        return text or None

    def error_message(self, response: httpx.Response) -> str:
        return structured_error_message(response)


# ---------------------------------------------------------------------------
# Handler contract
# ---------------------------------------------------------------------------

ChunkCallback = Callable[[str], None]


class ProviderAdapter(Protocol):
    name: str

    def endpoint(self, config: ProviderConfig) -> str: ...
    def headers(self, config: ProviderConfig) -> dict[str, str]: ...
    def params(self, config: ProviderConfig) -> dict[str, str] | None: ...
    def build_request(
        self, history: list[Message], config: ProviderConfig, system_prompt: str,
    ) -> dict[str, Any]: ...
    def parse_line(self, line: str) -> str | None: ...
    def error_message(self, response: httpx.Response) -> str: ...


class ProviderHandler(Protocol):
    """Streams one reply: calls *on_chunk* in order, returns at stream end,
    raises ``OperationCancelled`` or a ``PeikError`` otherwise."""

    async def __call__(
        self,
        config: ProviderConfig,
        history: list[Message],
        on_chunk: ChunkCallback,
        token: CancellationToken,
    ) -> None: ...


class StreamingHandler:
    """``ProviderHandler`` built from an adapter and the streaming fetcher."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        client: httpx.AsyncClient,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_retries: int = _MAX_RETRIES,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self.adapter = adapter
        self._client = client
        self._system_prompt = system_prompt
        self._max_retries = max_retries
        self._backoff_base = backoff_base

    async def __call__(
        self,
        config: ProviderConfig,
        history: list[Message],
        on_chunk: ChunkCallback,
        token: CancellationToken,
    ) -> None:
        body = self.adapter.build_request(history, config, self._system_prompt)

        def on_line(line: str) -> None:
            chunk = self.adapter.parse_line(line)
            if chunk:
                on_chunk(chunk)

        _logger.debug(
            "Streaming from %s (model=%s, %d messages)",
            self.adapter.name, config.model_name, len(history),
        )
        await fetch_stream_with_retries(
            self._client,
            self.adapter.endpoint(config),
            on_line=on_line,
            error_message=self.adapter.error_message,
            json=body,
            headers=self.adapter.headers(config),
            params=self.adapter.params(config),
            token=token,
            max_retries=self._max_retries,
            backoff_base=self._backoff_base,
        )


def create_provider_handlers(
    config: EngineConfig, client: httpx.AsyncClient,
) -> dict[str, StreamingHandler]:
    """Handlers for every built-in backend family, keyed by provider kind."""
    adapters: list[ProviderAdapter] = [GeminiAdapter(), OpenAIAdapter(), CustomAdapter()]
    return {
        adapter.name: StreamingHandler(
            adapter,
            client,
            system_prompt=config.system_prompt,
            max_retries=config.fetch.max_retries,
            backoff_base=config.fetch.backoff_base,
        )
        for adapter in adapters
    }
