"""SessionEngine -- owns the chat list and wires the managers together.

    storage ─┐                 ┌─ ChatLifecycleManager
    settings ├─ SessionEngine ─┼─ MessageDispatcher ── provider handlers
    config  ─┘        │        ├─ DurableSaveManager
                 EventEmitter  └─ SyncManager

The engine holds the authoritative in-memory state (chats, active chat,
settings, loading flag) and emits an event for every change so a front
end can render without polling.
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from peik.config import EngineConfig, ProviderConfig, Settings
from peik.core.chats import ChatLifecycleManager
from peik.core.dispatcher import MessageDispatcher, SendOutcome
from peik.core.saver import DurableSaveManager
from peik.errors import StorageError
from peik.events.bus import EventEmitter, Handler
from peik.llm.providers import ProviderHandler
from peik.storage.base import StorageAdapter
from peik.sync import ChannelFactory, SyncManager
from peik.types import Chat, EventType, ImageData

_logger = logging.getLogger(__name__)

DELETED_MODEL_LABEL = "Deleted model"
UNKNOWN_MODEL_LABEL = "Unknown"


class SessionEngine:
    """Chat session orchestrator.

    Parameters
    ----------
    storage:
        Durable store for settings and chats.
    config:
        Engine configuration (limits, retry policy, sync channel).
    providers:
        Streaming handlers keyed by provider kind.  More can be added
        with :meth:`register_provider`.
    channel_factory:
        Opens the broadcast channel used to notify sibling engines.
        ``None`` (or ``config.sync.enabled = False``) disables sync.
    emitter:
        Event emitter to publish on (a new one by default).
    """

    def __init__(
        self,
        storage: StorageAdapter,
        config: EngineConfig | None = None,
        providers: dict[str, ProviderHandler] | None = None,
        channel_factory: ChannelFactory | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.storage = storage
        self.config = config or EngineConfig()
        self.emitter = emitter or EventEmitter()
        self.providers: dict[str, ProviderHandler] = dict(providers or {})

        self.settings = Settings()
        self.chats: list[Chat] = []
        self.active_chat_id: str | None = None
        self.is_loading = False

        self.saver = DurableSaveManager(
            storage, self.emitter, self.config.save, on_saved=self._broadcast,
        )
        self.sync = SyncManager(
            self,
            channel_factory if self.config.sync.enabled else None,
            self.config.sync.channel_name,
        )
        self.chat_manager = ChatLifecycleManager(self)
        self.dispatcher = MessageDispatcher(self)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Load settings and chats; create a first chat on a fresh store.

        Raises
        ------
        StorageError
            Any storage failure is fatal to startup.  An ``error`` event is
            emitted first so the front end can show the recovery hint.
        """
        try:
            raw_settings = await self.storage.load_settings()
            chats = await self.storage.load_chat_list()
        except StorageError as e:
            _logger.error("Engine initialisation failed: %s", e)
            self.emitter.emit(EventType.ERROR, {"message": e.message, "fatal": True})
            raise

        try:
            self.settings = Settings.from_storage(raw_settings)
        except pydantic.ValidationError as e:
            _logger.warning("Stored settings are invalid, using defaults: %s", e)
            self.settings = Settings()

        self.chats = chats
        self.sync.setup()

        if not self.chats:
            await self.chat_manager.start_new_chat()
        else:
            newest = max(self.chats, key=lambda c: c.updated_at)
            try:
                loaded = await self.storage.load_chat_by_id(newest.id)
            except StorageError as e:
                self.emitter.emit(EventType.ERROR, {"message": e.message, "fatal": True})
                raise
            if loaded is not None:
                self.replace_chat(loaded)
            self.active_chat_id = newest.id

        _logger.info("Engine ready with %d chat(s)", len(self.chats))
        self.emitter.emit(EventType.INIT, {
            "settings": self.settings,
            "chats": self._sorted_summaries(),
            "activeChatId": self.active_chat_id,
        })
        self.emit_chat_list()
        self.emit_active_chat()

    def destroy(self) -> None:
        """Cancel in-flight sends, stop the save sweep, close the channel."""
        self.dispatcher.cancel_all()
        self.saver.destroy()
        self.sync.close()
        self.emitter.clear()

    # ------------------------------------------------------------------
    # Subscriptions and providers
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self.emitter.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self.emitter.unsubscribe(event_type, handler)

    def register_provider(self, name: str, handler: ProviderHandler) -> None:
        self.providers[name] = handler

    # ------------------------------------------------------------------
    # Delegated operations
    # ------------------------------------------------------------------

    async def send_message(
        self, text: str | None, image: ImageData | None = None, *, supersede: bool = False,
    ) -> SendOutcome | None:
        return await self.dispatcher.send(text, image, supersede=supersede)

    def cancel_sending(self) -> bool:
        """Abort the active chat's in-flight send."""
        if self.active_chat_id is None:
            return False
        return self.dispatcher.cancel(self.active_chat_id)

    async def start_new_chat(self) -> Chat | None:
        return await self.chat_manager.start_new_chat()

    async def switch_active_chat(self, chat_id: str) -> bool:
        return await self.chat_manager.switch_active_chat(chat_id)

    async def rename_chat(self, chat_id: str, title: str) -> bool:
        return await self.chat_manager.rename_chat(chat_id, title)

    async def delete_chat(self, chat_id: str) -> bool:
        return await self.chat_manager.delete_chat(chat_id)

    async def change_chat_model(self, chat_id: str, provider_id: str) -> bool:
        return await self.chat_manager.change_chat_model(chat_id, provider_id)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def save_settings(self, settings: Settings | dict[str, Any]) -> bool:
        if not isinstance(settings, Settings):
            try:
                settings = Settings.model_validate(settings)
            except pydantic.ValidationError as e:
                _logger.info("Rejected settings: %s", e)
                self.emitter.emit(EventType.ERROR, {"message": "The settings are invalid."})
                return False
        try:
            await self.storage.save_settings(settings.to_storage())
        except StorageError as e:
            self.emitter.emit(EventType.ERROR, {"message": e.message})
            return False
        self.settings = settings
        self.emitter.emit(EventType.SETTINGS_SAVED, {"settings": settings})
        return True

    def is_settings_valid(self) -> bool:
        provider = self.settings.resolve() or self.config.default_provider
        return provider is not None and provider.is_complete()

    def resolve_provider(self, chat: Chat | None = None) -> ProviderConfig | None:
        """Provider for a send: the chat's own, else active, else default."""
        if chat is not None and chat.provider:
            own = self.settings.resolve(chat.provider)
            if own is not None:
                return own
        return self.settings.resolve() or self.config.default_provider

    def default_model_info(self) -> tuple[str, str]:
        """(provider id, model name) assigned to new chats."""
        provider = self.settings.resolve() or self.config.default_provider
        if provider is None:
            return "", ""
        return provider.id, provider.model_name

    def model_display_info(self, chat: Chat) -> dict[str, str]:
        provider: ProviderConfig | None = None
        if chat.provider:
            provider = self.settings.resolve(chat.provider)
            default = self.config.default_provider
            if provider is None and default is not None and default.id == chat.provider:
                provider = default
        if provider is not None:
            return {
                "display_name": provider.display_name,
                "model_name": provider.model_name,
                "provider": provider.id,
            }
        return {
            "display_name": DELETED_MODEL_LABEL if chat.provider else UNKNOWN_MODEL_LABEL,
            "model_name": chat.model,
            "provider": chat.provider,
        }

    # ------------------------------------------------------------------
    # State helpers used by the managers
    # ------------------------------------------------------------------

    def set_loading(self, loading: bool) -> None:
        if self.is_loading == loading:
            return
        self.is_loading = loading
        self.emitter.emit(EventType.LOADING, {"loading": loading})

    def find_chat(self, chat_id: str) -> Chat | None:
        for chat in self.chats:
            if chat.id == chat_id:
                return chat
        return None

    def get_active_chat(self) -> Chat | None:
        if self.active_chat_id is None:
            return None
        return self.find_chat(self.active_chat_id)

    def replace_chat(self, chat: Chat) -> Chat:
        """Swap the list entry with the same id for *chat*."""
        for i, existing in enumerate(self.chats):
            if existing.id == chat.id:
                self.chats[i] = chat
                return chat
        self.chats.insert(0, chat)
        return chat

    def emit_chat_list(self) -> None:
        self.emitter.emit(EventType.CHAT_LIST_UPDATED, {
            "chats": self._sorted_summaries(),
            "activeChatId": self.active_chat_id,
        })

    def emit_active_chat(self) -> None:
        self.emitter.emit(EventType.ACTIVE_CHAT_SWITCHED, {"chat": self.get_active_chat()})

    def _sorted_summaries(self) -> list[Chat]:
        ordered = sorted(self.chats, key=lambda c: c.updated_at, reverse=True)
        return [c.summary() for c in ordered]

    def _broadcast(self) -> None:
        self.sync.broadcast_update()
