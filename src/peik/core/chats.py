"""Chat lifecycle: create, switch, rename, delete, change model."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from peik.errors import StorageError
from peik.types import Chat, EventType

if TYPE_CHECKING:
    from peik.core.engine import SessionEngine

_logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\r\n\0]")
_WHITESPACE_RUN = re.compile(r"\s+")


def sanitize_title(title: str) -> str:
    """Strip, drop CR/LF/NUL and collapse whitespace runs."""
    cleaned = _CONTROL_CHARS.sub("", title or "")
    return _WHITESPACE_RUN.sub(" ", cleaned).strip()


class ChatLifecycleManager:
    """Mutates the engine's chat list and active-chat pointer.

    Every mutation persists through the durable saver, notifies sibling
    engines and re-emits ``chatListUpdated`` / ``activeChatSwitched``.
    Failures are reported as ``error`` events, never raised.
    """

    def __init__(self, engine: SessionEngine) -> None:
        self._engine = engine

    def _error(self, message: str) -> None:
        self._engine.emitter.emit(EventType.ERROR, {"message": message})

    async def _commit(self, chat: Chat) -> None:
        engine = self._engine
        await engine.saver.save(chat)
        engine.sync.broadcast_update()
        engine.emit_chat_list()
        engine.emit_active_chat()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_new_chat(self) -> Chat | None:
        engine = self._engine
        max_chats = engine.config.limits.max_chats
        if max_chats is not None and len(engine.chats) >= max_chats:
            self._error(
                f"You can have at most {max_chats} chats. Delete an old chat first.",
            )
            return None

        provider_id, model = engine.default_model_info()
        chat = Chat(provider=provider_id, model=model)
        engine.chats.insert(0, chat)
        engine.active_chat_id = chat.id
        _logger.info("Started chat %s", chat.id)
        await self._commit(chat)
        return chat

    async def switch_active_chat(self, chat_id: str) -> bool:
        engine = self._engine
        if chat_id == engine.active_chat_id:
            return True
        chat = engine.find_chat(chat_id)
        if chat is None:
            self._error("Chat not found.")
            return False

        if not chat.is_loaded:
            try:
                loaded = await engine.storage.load_chat_by_id(chat_id)
            except StorageError as e:
                self._error(e.message)
                return False
            if loaded is None:
                self._error("Chat not found.")
                return False
            chat = engine.replace_chat(loaded)

        engine.active_chat_id = chat.id
        engine.emit_chat_list()
        engine.emit_active_chat()
        return True

    async def rename_chat(self, chat_id: str, title: str) -> bool:
        engine = self._engine
        clean = sanitize_title(title)
        if not clean:
            self._error("The chat title cannot be empty.")
            return False
        max_len = engine.config.limits.max_chat_title_length
        if max_len is not None and len(clean) > max_len:
            self._error(f"The chat title cannot be longer than {max_len} characters.")
            return False

        chat = engine.find_chat(chat_id)
        if chat is None:
            self._error("Chat not found.")
            return False

        chat.title = clean
        chat.touch()
        await self._commit(chat)
        return True

    async def delete_chat(self, chat_id: str) -> bool:
        engine = self._engine
        chat = engine.find_chat(chat_id)
        if chat is None:
            return False

        engine.dispatcher.forget(chat_id)
        try:
            await engine.storage.delete_chat_by_id(chat_id)
        except StorageError as e:
            self._error(e.message)
            return False
        # Only now: a failed delete keeps the chat, and its queued save with it
        engine.saver.discard(chat_id)

        engine.chats = [c for c in engine.chats if c.id != chat_id]
        _logger.info("Deleted chat %s", chat_id)

        if engine.active_chat_id == chat_id:
            engine.active_chat_id = None
            engine.sync.broadcast_update()
            await self._activate_fallback()
            return True

        engine.sync.broadcast_update()
        engine.emit_chat_list()
        engine.emit_active_chat()
        return True

    async def _activate_fallback(self) -> None:
        """Activate the newest chat that can be loaded, else start a new one."""
        engine = self._engine
        for chat in sorted(engine.chats, key=lambda c: c.updated_at, reverse=True):
            if await self.switch_active_chat(chat.id):
                return
            _logger.warning("Could not activate chat %s, trying the next one", chat.id)
        if await self.start_new_chat() is None and engine.chats:
            # At the chat limit: point at the newest so a later reload can load it
            engine.active_chat_id = max(engine.chats, key=lambda c: c.updated_at).id
            engine.emit_chat_list()
            engine.emit_active_chat()

    async def change_chat_model(self, chat_id: str, provider_id: str) -> bool:
        engine = self._engine
        provider = engine.settings.resolve(provider_id)
        if provider is None:
            self._error("The selected model is not configured.")
            return False
        chat = engine.find_chat(chat_id)
        if chat is None:
            self._error("Chat not found.")
            return False

        chat.provider = provider.id
        chat.model = provider.model_name
        chat.touch()
        await self._commit(chat)
        return True
