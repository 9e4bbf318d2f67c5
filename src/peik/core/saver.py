"""Durable chat persistence with bounded retry and a background queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from peik.config import SaveConfig
from peik.errors import StorageError
from peik.events.bus import EventEmitter
from peik.storage.base import StorageAdapter
from peik.types import Chat, EventType

_logger = logging.getLogger(__name__)

SAVE_FAILED_WARNING = (
    "Saving failed. The app will keep retrying automatically; "
    "please do not close it."
)


class DurableSaveManager:
    """Wraps ``storage.save_chat`` so a save failure never loses a chat.

    ``save`` retries a fixed number of times.  When every attempt fails the
    chat joins the unsaved queue (keyed by id, so repeated failures enqueue
    it once) and a background sweep retries the whole queue every
    ``sweep_interval`` seconds until it drains.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        emitter: EventEmitter,
        config: SaveConfig | None = None,
        on_saved: Callable[[], None] | None = None,
    ) -> None:
        self._storage = storage
        self._emitter = emitter
        self._config = config or SaveConfig()
        self._on_saved = on_saved
        self._unsaved: dict[str, Chat] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        # Queued chats deleted while a background retry may be writing them
        self._discarded: set[str] = set()

    @property
    def unsaved(self) -> list[Chat]:
        return list(self._unsaved.values())

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def save(self, chat: Chat) -> bool:
        """Persist *chat*; return False if it had to be queued."""
        attempts = self._config.max_retries
        for attempt in range(attempts):
            try:
                await self._storage.save_chat(chat)
            except StorageError as e:
                _logger.warning(
                    "Save failed for chat %s (attempt %d/%d): %s",
                    chat.id, attempt + 1, attempts, e,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._config.retry_delay)
                continue

            if self._unsaved.pop(chat.id, None) is not None:
                self._emitter.emit(EventType.SUCCESS, {
                    "message": f'Chat "{chat.title}" that failed to save earlier is now saved.',
                })
            return True

        self._enqueue(chat)
        return False

    def discard(self, chat_id: str) -> None:
        """Drop a queued chat (it was deleted)."""
        if self._unsaved.pop(chat_id, None) is not None:
            self._discarded.add(chat_id)

    async def retry_unsaved(self) -> None:
        """Try every queued chat once, concurrently."""
        self._discarded.clear()
        if not self._unsaved:
            return
        _logger.info("Retrying %d unsaved chat(s)", len(self._unsaved))
        pending = list(self._unsaved.values())
        results = await asyncio.gather(
            *(self._storage.save_chat(chat) for chat in pending),
            return_exceptions=True,
        )
        for chat, result in zip(pending, results):
            if isinstance(result, BaseException):
                _logger.warning("Background save failed for chat %s: %s", chat.id, result)
                continue
            if chat.id in self._discarded:
                await self._delete_resurrected(chat.id)
                continue
            # Re-queued with a newer object, or already saved by save()
            if self._unsaved.get(chat.id) is not chat:
                continue
            del self._unsaved[chat.id]
            if self._on_saved is not None:
                self._on_saved()
            self._emitter.emit(EventType.SUCCESS, {
                "message": f'Chat "{chat.title}" was saved successfully.',
            })

    def destroy(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _delete_resurrected(self, chat_id: str) -> None:
        """Remove a chat that a background save wrote back after its deletion."""
        self._discarded.discard(chat_id)
        try:
            await self._storage.delete_chat_by_id(chat_id)
        except StorageError as e:
            _logger.error("Could not remove deleted chat %s again: %s", chat_id, e)
            self._emitter.emit(EventType.ERROR, {"message": e.message})

    def _enqueue(self, chat: Chat) -> None:
        self._unsaved[chat.id] = chat
        _logger.error("Chat %s queued for background save", chat.id)
        self._emitter.emit(EventType.WARNING, {"message": SAVE_FAILED_WARNING})
        if not self.sweeping:
            self._sweep_task = asyncio.ensure_future(self._sweep())

    async def _sweep(self) -> None:
        while self._unsaved:
            await asyncio.sleep(self._config.sweep_interval)
            await self.retry_unsaved()
        _logger.debug("Unsaved queue drained, background sweep stopped")
