"""In-memory storage adapter, for tests and environments without a disk."""

from __future__ import annotations

import copy
from typing import Any

from peik.types import Chat


class MemoryStorage:
    """Keeps serialised copies so callers can never alias stored state."""

    def __init__(self) -> None:
        self._settings: dict[str, Any] | None = None
        self._chats: dict[str, dict[str, Any]] = {}

    async def load_settings(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._settings)

    async def save_settings(self, settings: dict[str, Any]) -> None:
        self._settings = copy.deepcopy(settings)

    async def load_chat_list(self) -> list[Chat]:
        chats = [
            Chat.from_dict({k: v for k, v in raw.items() if k != "messages"})
            for raw in self._chats.values()
        ]
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats

    async def load_chat_by_id(self, chat_id: str) -> Chat | None:
        raw = self._chats.get(chat_id)
        if raw is None:
            return None
        return Chat.from_dict(copy.deepcopy(raw))

    async def save_chat(self, chat: Chat) -> None:
        raw = chat.to_dict()
        if "messages" not in raw:
            # Metadata-only update keeps the stored messages
            raw["messages"] = self._chats.get(chat.id, {}).get("messages", [])
        self._chats[chat.id] = raw

    async def delete_chat_by_id(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)

    def close(self) -> None:
        pass
