"""Tests for the click commands and interactive slash commands."""

from __future__ import annotations

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from peik.cli import StreamingDisplay, handle_command, main, make_channel_factory
from peik.config import EngineConfig, StorageConfig, SyncConfig
from peik.sync import SQLiteBroadcastChannel
from peik.types import EngineEvent, EventType, Message, Role


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "peik.yaml"
    path.write_text(yaml.dump({
        "storage": {"backend": "sqlite", "db_path": str(tmp_path / "peik.db")},
    }))
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


class TestCommands:
    def test_no_chats_yet(self, runner, config_file):
        result = runner.invoke(main, ["-c", config_file, "chats"])
        assert result.exit_code == 0
        assert "No chats yet." in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(main, ["-c", str(tmp_path / "nope.yaml"), "chats"])
        assert result.exit_code == 2
        assert "Config file not found" in result.output

    def test_set_provider_then_show(self, runner, config_file):
        result = runner.invoke(main, [
            "-c", config_file, "settings", "set-provider", "openai",
            "-m", "gpt-4o", "-k", "sk-abcdefgh1234",
        ])
        assert result.exit_code == 0
        assert "Saved provider openai." in result.output

        result = runner.invoke(main, ["-c", config_file, "settings", "show"])
        assert result.exit_code == 0
        assert "gpt-4o" in result.output
        assert "sk-a...1234" in result.output
        assert "sk-abcdefgh1234" not in result.output
        assert "Settings are valid." in result.output

    def test_incomplete_custom_provider_warns(self, runner, config_file):
        result = runner.invoke(main, [
            "-c", config_file, "settings", "set-provider", "local", "-m", "llama",
        ])
        assert result.exit_code == 0
        assert "still missing required fields" in result.output

        result = runner.invoke(main, ["-c", config_file, "settings", "show"])
        assert "missing or incomplete" in result.output

    def test_bare_custom_id_rejected(self, runner, config_file):
        result = runner.invoke(main, [
            "-c", config_file, "settings", "set-provider", "custom",
        ])
        assert result.exit_code == 2

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "peik" in result.output


class TestChannelFactory:
    def test_memory_backend_has_no_channel(self):
        config = EngineConfig(storage=StorageConfig(backend="memory"))
        assert make_channel_factory(config) is None

    def test_in_memory_sqlite_has_no_channel(self):
        config = EngineConfig(storage=StorageConfig(db_path=":memory:"))
        assert make_channel_factory(config) is None

    async def test_sqlite_file_opens_shared_channel(self, tmp_path):
        config = EngineConfig(
            storage=StorageConfig(db_path=str(tmp_path / "peik.db")),
            sync=SyncConfig(poll_interval=0.01),
        )
        channel = make_channel_factory(config)("peik-chat-sync", lambda m: None)
        try:
            assert isinstance(channel, SQLiteBroadcastChannel)
            assert (tmp_path / "peik.db").exists()
        finally:
            channel.close()


# ---------------------------------------------------------------------------
# Slash commands
# ---------------------------------------------------------------------------

class TestSlashCommands:
    async def test_quit(self, engine):
        for cmd in ("/quit", "/exit", "/q"):
            assert await handle_command(cmd, engine) == "quit"

    async def test_unknown_is_not_handled(self, engine):
        assert await handle_command("/frobnicate", engine) is False

    async def test_new_and_list(self, engine, capsys):
        first = engine.active_chat_id
        assert await handle_command("/new", engine) is True
        assert engine.active_chat_id != first

        assert await handle_command("/list", engine) is True
        out = capsys.readouterr().out
        assert "Started a new chat." in out
        assert "Chats" in out

    async def test_switch_usage(self, engine, capsys):
        assert await handle_command("/switch 9", engine) is True
        assert "Usage: /switch" in capsys.readouterr().out

    async def test_switch_by_number(self, engine):
        first = engine.active_chat_id
        await handle_command("/new", engine)

        await handle_command("/switch 2", engine)

        assert engine.active_chat_id == first

    async def test_rename(self, engine, capsys):
        await handle_command("/rename Holiday plans", engine)
        assert engine.get_active_chat().title == "Holiday plans"
        assert "Renamed to: Holiday plans" in capsys.readouterr().out

    async def test_model_switch(self, engine, capsys):
        await handle_command("/model gemini", engine)
        assert engine.get_active_chat().provider == "gemini"
        assert "Model switched to: Gemini" in capsys.readouterr().out


class TestStreamingDisplay:
    def test_renders_stream(self, capsys):
        display = StreamingDisplay(Console())
        display.handle(EngineEvent(EventType.MESSAGE,
                                   {"chatId": "c", "message": Message(role=Role.MODEL)}))
        display.handle(EngineEvent(EventType.CHUNK, {"chatId": "c", "chunk": "Hel"}))
        display.handle(EngineEvent(EventType.CHUNK, {"chatId": "c", "chunk": "lo"}))
        display.handle(EngineEvent(EventType.STREAM_END,
                                   {"chatId": "c", "content": "Hello", "status": "cancelled"}))

        out = capsys.readouterr().out
        assert "Hello" in out
        assert "(cancelled)" in out
