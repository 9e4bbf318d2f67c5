"""Shared fixtures: fake provider handler, event recorder, engine factory."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from peik.cancellation import CancellationToken
from peik.config import EngineConfig, ProviderConfig
from peik.core.engine import SessionEngine
from peik.storage.memory import MemoryStorage
from peik.types import EngineEvent, EventType, Message

OPENAI_SETTINGS = {
    "activeProviderId": "openai",
    "providers": {
        "openai": {"modelName": "gpt-4o", "apiKey": "sk-test"},
        "gemini": {"modelName": "gemini-pro", "apiKey": "g-test"},
    },
}


class FakeProvider:
    """ProviderHandler double that streams canned chunks.

    The first *block* calls stop after their chunks and wait for
    ``release`` (or cancellation) before finishing.
    """

    def __init__(self, chunks=("Hi", " there"), error: Exception | None = None,
                 block: int = 0):
        self.chunks = list(chunks)
        self.error = error
        self.block = block
        self.calls: list[list[Message]] = []
        self.configs: list[ProviderConfig] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, config, history, on_chunk, token: CancellationToken):
        self.calls.append(list(history))
        self.configs.append(config)
        self.started.set()
        for chunk in self.chunks:
            token.raise_if_cancelled()
            on_chunk(chunk)
        if len(self.calls) <= self.block:
            await token.run(self.release.wait())
        if self.error is not None:
            raise self.error


class BrokenStream(httpx.AsyncByteStream):
    """Response body that yields *chunks* and then drops the connection."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")


class Recorder:
    """Collects every event an engine emits."""

    def __init__(self) -> None:
        self.events: list[EngineEvent] = []

    def __call__(self, event: EngineEvent) -> None:
        self.events.append(event)

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    def of(self, event_type: EventType) -> list[EngineEvent]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate()* holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_engine(storage):
    engines: list[SessionEngine] = []

    async def factory(
        config: EngineConfig | None = None,
        providers=None,
        settings=OPENAI_SETTINGS,
        channel_factory=None,
        store=None,
    ) -> SessionEngine:
        store = store or storage
        if settings is not None:
            await store.save_settings(settings)
        engine = SessionEngine(
            store, config or EngineConfig(), providers=providers or {},
            channel_factory=channel_factory,
        )
        await engine.init()
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.destroy()


@pytest.fixture
async def engine(make_engine, provider) -> SessionEngine:
    return await make_engine(providers={"openai": provider, "gemini": provider})


@pytest.fixture
def recorder(engine) -> Recorder:
    rec = Recorder()
    engine.subscribe("*", rec)
    return rec
