"""Tests for the storage adapters (memory and SQLite)."""

from __future__ import annotations

import sqlite3

import pytest

from peik.config import StorageConfig
from peik.errors import (
    GenericStorageError,
    StorageAccessError,
    StorageCapacityError,
    StorageVersionError,
)
from peik.storage import MemoryStorage, SQLiteStorage, create_storage
from peik.storage.sqlite import _translate
from peik.types import Chat, ImageData, Message, Role


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStorage()
    else:
        s = SQLiteStorage(str(tmp_path / "peik.db"))
        yield s
        s.close()


def _chat(title: str, updated_at: int) -> Chat:
    return Chat(
        title=title,
        created_at=1000,
        updated_at=updated_at,
        provider="openai",
        model="gpt-4o",
        messages=[
            Message(role=Role.USER, content="Look",
                    image=ImageData(data="aGVsbG8=", mime_type="image/png")),
            Message(role=Role.MODEL, content="A cat."),
        ],
    )


class TestSettings:
    async def test_first_run_is_none(self, store):
        assert await store.load_settings() is None

    async def test_round_trip(self, store):
        doc = {"activeProviderId": "openai",
               "providers": {"openai": {"modelName": "gpt-4o", "apiKey": "k"}}}
        await store.save_settings(doc)
        await store.save_settings({**doc, "activeProviderId": "gemini"})

        loaded = await store.load_settings()
        assert loaded["activeProviderId"] == "gemini"
        assert loaded["providers"] == doc["providers"]


class TestChats:
    async def test_round_trip(self, store):
        chat = _chat("Cats", 2000)
        await store.save_chat(chat)

        loaded = await store.load_chat_by_id(chat.id)

        assert loaded == chat
        assert loaded is not chat
        assert loaded.messages[0].image.mime_type == "image/png"

    async def test_missing_chat(self, store):
        assert await store.load_chat_by_id("chat_nope") is None

    async def test_list_is_newest_first_without_messages(self, store):
        old = _chat("Old", 2000)
        new = _chat("New", 3000)
        await store.save_chat(old)
        await store.save_chat(new)

        listed = await store.load_chat_list()

        assert [c.title for c in listed] == ["New", "Old"]
        assert all(c.messages is None for c in listed)

    async def test_metadata_only_save_keeps_messages(self, store):
        chat = _chat("Before", 2000)
        await store.save_chat(chat)

        summary = chat.summary()
        summary.title = "After"
        summary.updated_at = 2500
        await store.save_chat(summary)

        loaded = await store.load_chat_by_id(chat.id)
        assert loaded.title == "After"
        assert loaded.updated_at == 2500
        assert [m.content for m in loaded.messages] == ["Look", "A cat."]

    async def test_upsert_replaces_messages(self, store):
        chat = _chat("Cats", 2000)
        await store.save_chat(chat)
        chat.messages.append(Message(role=Role.USER, content="More"))
        await store.save_chat(chat)

        loaded = await store.load_chat_by_id(chat.id)
        assert len(loaded.messages) == 3

    async def test_delete(self, store):
        chat = _chat("Gone", 2000)
        await store.save_chat(chat)

        await store.delete_chat_by_id(chat.id)
        await store.delete_chat_by_id(chat.id)

        assert await store.load_chat_by_id(chat.id) is None
        assert await store.load_chat_list() == []


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------

class TestSQLite:
    async def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "peik.db")
        first = SQLiteStorage(path)
        chat = _chat("Durable", 2000)
        await first.save_chat(chat)
        first.close()

        second = SQLiteStorage(path)
        try:
            assert (await second.load_chat_by_id(chat.id)) == chat
        finally:
            second.close()

    async def test_newer_schema_rejected(self, tmp_path):
        path = tmp_path / "peik.db"
        conn = sqlite3.connect(path)
        conn.execute("PRAGMA user_version = 99")
        conn.close()

        store = SQLiteStorage(str(path))
        with pytest.raises(StorageVersionError):
            await store.load_chat_list()

    async def test_unopenable_path_is_access_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")

        store = SQLiteStorage(str(blocker / "peik.db"))
        with pytest.raises(StorageAccessError):
            await store.load_settings()

    def test_translate(self):
        assert isinstance(
            _translate(sqlite3.OperationalError("database or disk is full")),
            StorageCapacityError,
        )
        assert isinstance(
            _translate(sqlite3.OperationalError("attempt to write a readonly database")),
            StorageAccessError,
        )
        assert isinstance(_translate(PermissionError("denied")), StorageAccessError)
        assert isinstance(
            _translate(sqlite3.IntegrityError("constraint failed")),
            GenericStorageError,
        )


class TestCreateStorage:
    def test_memory(self):
        assert isinstance(create_storage(StorageConfig(backend="memory")), MemoryStorage)

    def test_sqlite(self, tmp_path):
        store = create_storage(StorageConfig(backend="sqlite",
                                             db_path=str(tmp_path / "x.db")))
        assert isinstance(store, SQLiteStorage)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage(StorageConfig(backend="redis"))
