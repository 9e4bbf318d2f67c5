"""Storage adapter contract.

All operations are asynchronous and idempotent on retry.  Failures are
raised as one of the ``StorageError`` kinds in :mod:`peik.errors`.
"""

from __future__ import annotations

from typing import Any, Protocol

from peik.types import Chat


class StorageAdapter(Protocol):
    async def load_settings(self) -> dict[str, Any] | None:
        """Persisted settings document, or ``None`` on first run."""
        ...

    async def save_settings(self, settings: dict[str, Any]) -> None: ...

    async def load_chat_list(self) -> list[Chat]:
        """All chats, newest first, with ``messages`` left unloaded."""
        ...

    async def load_chat_by_id(self, chat_id: str) -> Chat | None:
        """Full chat including messages."""
        ...

    async def save_chat(self, chat: Chat) -> None:
        """Upsert by id."""
        ...

    async def delete_chat_by_id(self, chat_id: str) -> None: ...
