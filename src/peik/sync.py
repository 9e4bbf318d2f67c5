"""Cross-session synchronisation over a broadcast channel.

Several engines sharing one durable store (terminal windows, worker
processes, tests) keep each other current with a coarse "something
changed" notification.  On receipt the engine reloads from storage; the
last successful write wins.

Engines in one process can share an :class:`InProcessBroadcastHub`;
separate processes on one SQLite file use :class:`SQLiteBroadcastChannel`.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol

from peik.errors import PeikError
from peik.types import Chat, EventType, now_ms

if TYPE_CHECKING:
    from peik.core.engine import SessionEngine

_logger = logging.getLogger(__name__)

UPDATE_MESSAGE = {"type": "update"}

MessageCallback = Callable[[dict[str, Any]], None]


class BroadcastChannel(Protocol):
    """A named channel that delivers messages to every *other* subscriber."""

    def post_message(self, message: dict[str, Any]) -> None: ...
    def close(self) -> None: ...


ChannelFactory = Callable[[str, MessageCallback], BroadcastChannel]


# ---------------------------------------------------------------------------
# In-process channel implementation
# ---------------------------------------------------------------------------

class InProcessChannel:
    """One endpoint of an :class:`InProcessBroadcastHub` channel."""

    def __init__(
        self, hub: InProcessBroadcastHub, name: str, on_message: MessageCallback,
    ) -> None:
        self.name = name
        self.closed = False
        self._hub = hub
        self._on_message = on_message

    def post_message(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        self._hub._post(self, message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._hub._remove(self)

    def _deliver(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self._on_message(message)
        except Exception:
            _logger.exception("Broadcast handler failed on channel %s", self.name)


class InProcessBroadcastHub:
    """Routes messages between channels of the same name.

    Delivery is asynchronous (next loop iteration) and never reaches the
    sending endpoint, mirroring a browser ``BroadcastChannel``.  Pass
    :meth:`open` as the engine's ``channel_factory``.
    """

    def __init__(self) -> None:
        self._channels: dict[str, list[InProcessChannel]] = {}

    def open(self, name: str, on_message: MessageCallback) -> InProcessChannel:
        channel = InProcessChannel(self, name, on_message)
        self._channels.setdefault(name, []).append(channel)
        return channel

    def _post(self, sender: InProcessChannel, message: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        for channel in list(self._channels.get(sender.name, [])):
            if channel is not sender:
                loop.call_soon(channel._deliver, copy.deepcopy(message))

    def _remove(self, channel: InProcessChannel) -> None:
        peers = self._channels.get(channel.name, [])
        if channel in peers:
            peers.remove(channel)
        if not peers:
            self._channels.pop(channel.name, None)


# ---------------------------------------------------------------------------
# Cross-process channel over the shared SQLite file
# ---------------------------------------------------------------------------

_MESSAGE_RETENTION_MS = 60_000


class SQLiteBroadcastChannel:
    """Channel shared by every process that opens the same SQLite file.

    ``post_message`` appends a row to ``sync_messages``; each open channel
    polls for rows from other senders with an id above the last one it
    has seen.  Rows older than a minute are pruned on every post.
    """

    def __init__(
        self,
        db_path: str | Path,
        name: str,
        on_message: MessageCallback,
        poll_interval: float = 1.0,
    ) -> None:
        self.name = name
        self.closed = False
        self._on_message = on_message
        self._poll_interval = poll_interval
        self._sender = uuid.uuid4().hex
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task[None]] = set()

        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        try:
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)
            self._conn.commit()
            self._last_id: int = self._conn.execute(
                "SELECT COALESCE(MAX(id), 0) FROM sync_messages",
            ).fetchone()[0]
        except sqlite3.Error:
            self._conn.close()
            raise
        self._poller = asyncio.ensure_future(self._poll())

    def post_message(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        task = asyncio.ensure_future(asyncio.to_thread(self._insert, json.dumps(message)))
        self._pending.add(task)
        task.add_done_callback(self._post_done)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._poller.cancel()
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _post_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Sync message not posted on %s: %s", self.name, task.exception())

    def _insert(self, payload: str) -> None:
        with self._lock:
            if self.closed:
                return
            now = now_ms()
            self._conn.execute(
                "INSERT INTO sync_messages (channel, sender, payload, created_at) "
                "VALUES (?, ?, ?, ?)",
                (self.name, self._sender, payload, now),
            )
            self._conn.execute(
                "DELETE FROM sync_messages WHERE created_at < ?",
                (now - _MESSAGE_RETENTION_MS,),
            )
            self._conn.commit()

    def _fetch(self) -> list[dict[str, Any]]:
        with self._lock:
            if self.closed:
                return []
            rows = self._conn.execute(
                "SELECT id, sender, payload FROM sync_messages "
                "WHERE id > ? AND channel = ? ORDER BY id",
                (self._last_id, self.name),
            ).fetchall()
        messages: list[dict[str, Any]] = []
        for row_id, sender, payload in rows:
            self._last_id = max(self._last_id, row_id)
            if sender == self._sender:
                continue
            try:
                messages.append(json.loads(payload))
            except json.JSONDecodeError:
                _logger.warning("Ignoring malformed sync message %d", row_id)
        return messages

    async def _poll(self) -> None:
        while not self.closed:
            await asyncio.sleep(self._poll_interval)
            try:
                messages = await asyncio.to_thread(self._fetch)
            except sqlite3.Error as e:
                _logger.warning("Sync poll failed on %s: %s", self.name, e)
                continue
            for message in messages:
                if self.closed:
                    return
                try:
                    self._on_message(message)
                except Exception:
                    _logger.exception("Broadcast handler failed on channel %s", self.name)


def sqlite_channel_factory(
    db_path: str | Path, poll_interval: float = 1.0,
) -> ChannelFactory:
    """Channel factory for engines that share the SQLite file at *db_path*."""

    def open_channel(name: str, on_message: MessageCallback) -> SQLiteBroadcastChannel:
        return SQLiteBroadcastChannel(db_path, name, on_message, poll_interval)

    return open_channel


# ---------------------------------------------------------------------------
# Sync manager
# ---------------------------------------------------------------------------

class SyncManager:
    """Broadcasts local changes and reconciles on remote ones.

    Parameters
    ----------
    engine:
        The engine whose chat list is reconciled.
    channel_factory:
        Opens a :class:`BroadcastChannel`.  ``None`` disables sync; every
        operation then becomes a no-op.
    channel_name:
        Name shared by all engines that should see each other.
    """

    def __init__(
        self,
        engine: SessionEngine,
        channel_factory: ChannelFactory | None = None,
        channel_name: str = "peik-chat-sync",
    ) -> None:
        self._engine = engine
        self._factory = channel_factory
        self._channel_name = channel_name
        self._channel: BroadcastChannel | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        return self._channel is not None

    def setup(self) -> None:
        """Open the channel.  A factory failure leaves sync disabled."""
        if self._factory is None or self._channel is not None:
            return
        try:
            self._channel = self._factory(self._channel_name, self._on_message)
        except (OSError, RuntimeError, sqlite3.Error) as e:
            _logger.error("Broadcast channel could not be created: %s", e)
            self._channel = None

    def broadcast_update(self) -> None:
        if self._channel is not None:
            self._channel.post_message(dict(UPDATE_MESSAGE))

    def close(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("type") != "update":
            return
        task = asyncio.ensure_future(self.handle_sync_update())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_sync_update(self) -> None:
        """Reload the chat list from storage and re-emit state."""
        engine = self._engine
        try:
            stored = await engine.storage.load_chat_list()
            current = {c.id: c for c in engine.chats}
            chats: list[Chat] = []
            for summary in stored:
                local = current.get(summary.id)
                # An in-flight send owns its chat object
                if local is not None and engine.dispatcher.is_sending(summary.id):
                    chats.append(local)
                else:
                    chats.append(summary)
            engine.chats = chats

            if engine.get_active_chat() is None:
                if not chats:
                    _logger.info("All chats were removed elsewhere, starting a new one")
                    await engine.chat_manager.start_new_chat()
                    return
                newest = max(chats, key=lambda c: c.updated_at)
                engine.active_chat_id = newest.id

            active = engine.get_active_chat()
            if active is not None and not active.is_loaded:
                loaded = await engine.storage.load_chat_by_id(active.id)
                if loaded is not None:
                    engine.replace_chat(loaded)

            engine.emit_chat_list()
            engine.emit_active_chat()
        except PeikError as e:
            _logger.error("Sync update failed: %s", e)
            engine.emitter.emit(EventType.ERROR, {"message": e.message})
