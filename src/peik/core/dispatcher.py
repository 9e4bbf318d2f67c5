"""Message dispatch -- the state machine behind a single send.

    Idle -> Validating -> AwaitingResponse -> Completed | Cancelled | Failed -> Idle

Validation happens before anything is appended, so a rejected send never
touches the chat.  Once accepted, the user message and an empty model
placeholder are appended; the placeholder is either filled with the
complete reply or removed, never persisted half-written.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from peik.cancellation import CancellationToken, OperationCancelled
from peik.config import LimitsConfig, ProviderConfig
from peik.errors import PeikError, ValidationError
from peik.llm.providers import ProviderHandler
from peik.types import IMAGE_CHAT_TITLE, Chat, EventType, ImageData, Message, Role

if TYPE_CHECKING:
    from peik.core.engine import SessionEngine

_logger = logging.getLogger(__name__)

TITLE_PREFIX_LENGTH = 30


class SendOutcome(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RuntimeState:
    """Transient per-chat send state.  Never persisted."""

    is_sending: bool = False
    token: CancellationToken | None = None


def derive_title(text: str | None, image: ImageData | None) -> str:
    """Title for a chat from its first message."""
    text = (text or "").strip()
    if not text:
        return IMAGE_CHAT_TITLE if image is not None else ""
    if len(text) > TITLE_PREFIX_LENGTH:
        return text[:TITLE_PREFIX_LENGTH] + "..."
    return text


def validate_send(
    chat: Chat,
    text: str | None,
    image: ImageData | None,
    provider: ProviderConfig | None,
    handler: ProviderHandler | None,
    limits: LimitsConfig,
) -> None:
    """Raise ``ValidationError`` if the send must be rejected."""
    if text is not None and not isinstance(text, str):
        raise ValidationError("The message input is invalid.")
    has_text = bool(text and text.strip())
    if not has_text and image is None:
        raise ValidationError("Type a message or attach an image.")

    if provider is None:
        raise ValidationError("No model provider is configured. Please check your settings.")
    if handler is None:
        raise ValidationError(f"The provider {provider.kind} is not supported.")
    if not provider.is_complete():
        raise ValidationError("API settings are incomplete. Please check your settings.")

    max_len = limits.max_message_length
    if max_len is not None and has_text and len(text) > max_len:
        raise ValidationError(f"A message cannot be longer than {max_len} characters.")
    if image is not None and not image.is_well_formed():
        raise ValidationError("The attached image is invalid.")

    max_messages = limits.max_messages_per_chat
    if max_messages is not None and chat.user_message_count >= max_messages:
        raise ValidationError(f"A chat can hold at most {max_messages} messages.")


class MessageDispatcher:
    """Runs sends for an engine; at most one is awaiting a response.

    Per-chat :class:`RuntimeState` records live in an arena keyed by chat
    id, created lazily and dropped when the chat is deleted.
    """

    def __init__(self, engine: SessionEngine) -> None:
        self._engine = engine
        self._states: dict[str, RuntimeState] = {}
        self._current: CancellationToken | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Runtime state arena
    # ------------------------------------------------------------------

    def state(self, chat_id: str) -> RuntimeState:
        state = self._states.get(chat_id)
        if state is None:
            state = self._states[chat_id] = RuntimeState()
        return state

    def is_sending(self, chat_id: str) -> bool:
        state = self._states.get(chat_id)
        return state is not None and state.is_sending

    def cancel(self, chat_id: str, reason: str = "cancelled") -> bool:
        """Abort the in-flight send of *chat_id*, if any."""
        state = self._states.get(chat_id)
        if state is None or not state.is_sending or state.token is None:
            return False
        state.token.cancel(reason)
        return True

    def forget(self, chat_id: str) -> None:
        """Cancel and drop the runtime state of a deleted chat."""
        self.cancel(chat_id, "deleted")
        self._states.pop(chat_id, None)

    def cancel_all(self) -> None:
        for chat_id in list(self._states):
            self.cancel(chat_id, "shutdown")

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str | None,
        image: ImageData | None = None,
        *,
        supersede: bool = False,
    ) -> SendOutcome | None:
        """Send *text* (and/or *image*) in the active chat.

        Returns the terminal outcome, or ``None`` when the request was
        rejected before anything was appended.  With *supersede* an
        in-flight send is cancelled (and fully cleaned up) first;
        otherwise a send during loading is silently ignored.
        """
        engine = self._engine
        while engine.is_loading:
            if not supersede or self._current is None:
                _logger.debug("Send ignored: another send is in flight")
                return None
            self._current.cancel("superseded")
            await self._idle.wait()

        chat = engine.get_active_chat()
        if chat is None or not chat.is_loaded:
            return None

        provider = engine.resolve_provider(chat)
        handler = engine.providers.get(provider.kind) if provider else None
        try:
            validate_send(chat, text, image, provider, handler, engine.config.limits)
        except ValidationError as e:
            _logger.info("Send rejected: %s", e)
            engine.emitter.emit(EventType.ERROR, {"message": e.message, "chatId": chat.id})
            return None

        return await self._run(chat, text or "", image, provider, handler)

    async def _run(
        self,
        chat: Chat,
        text: str,
        image: ImageData | None,
        provider: ProviderConfig,
        handler: ProviderHandler,
    ) -> SendOutcome:
        engine = self._engine
        emit = engine.emitter.emit
        messages = chat.messages
        if messages is None:
            raise PeikError(f"Chat {chat.id} is not loaded.")

        state = self.state(chat.id)
        token = self._acquire(state)
        self._idle.clear()
        engine.set_loading(True)

        user_message = Message(role=Role.USER, content=text, image=image)
        messages.append(user_message)
        emit(EventType.MESSAGE, {"chatId": chat.id, "message": user_message})

        if len(messages) == 1:
            chat.title = derive_title(text, image) or chat.title
            engine.emit_chat_list()
            engine.emit_active_chat()

        placeholder = Message(role=Role.MODEL)
        messages.append(placeholder)
        emit(EventType.MESSAGE, {"chatId": chat.id, "message": placeholder})

        history = messages[:-1]
        parts: list[str] = []

        def on_chunk(chunk: str) -> None:
            parts.append(chunk)
            emit(EventType.CHUNK, {"chatId": chat.id, "chunk": chunk})

        outcome = SendOutcome.FAILED
        error_message: str | None = None
        try:
            _logger.info(
                "Sending to %s (chat=%s, model=%s)",
                provider.id, chat.id, provider.model_name,
            )
            await handler(provider, history, on_chunk, token)
            token.raise_if_cancelled()
            content = "".join(parts)
            if not content:
                raise PeikError("The model returned an empty response.")
            placeholder.content = content
            outcome = SendOutcome.COMPLETED
        except OperationCancelled as e:
            _logger.info("Send cancelled (chat=%s): %s", chat.id, e.reason)
            outcome = SendOutcome.CANCELLED
        except asyncio.CancelledError:
            outcome = SendOutcome.CANCELLED
            raise
        except PeikError as e:
            _logger.warning("Send failed (chat=%s): %s", chat.id, e)
            error_message = e.message
        except Exception as e:
            _logger.exception("Provider handler raised unexpectedly")
            error_message = str(e) or PeikError.default_message
        finally:
            await self._finish(chat, state, token, placeholder, outcome, error_message)
        return outcome

    async def _finish(
        self,
        chat: Chat,
        state: RuntimeState,
        token: CancellationToken,
        placeholder: Message,
        outcome: SendOutcome,
        error_message: str | None,
    ) -> None:
        engine = self._engine
        emit = engine.emitter.emit
        try:
            if outcome is not SendOutcome.COMPLETED:
                if chat.messages and placeholder in chat.messages:
                    chat.messages.remove(placeholder)
                    emit(EventType.MESSAGE_REMOVED, {
                        "chatId": chat.id, "messageId": placeholder.id,
                    })
                if outcome is SendOutcome.FAILED:
                    emit(EventType.ERROR, {
                        "message": error_message or PeikError.default_message,
                        "chatId": chat.id,
                    })

            chat.touch()
            # A deleted chat must not be written back
            if self._states.get(chat.id) is state:
                await engine.saver.save(chat)
                engine.sync.broadcast_update()

            emit(EventType.STREAM_END, {
                "chatId": chat.id,
                "content": placeholder.content if outcome is SendOutcome.COMPLETED else "",
                "status": outcome.value,
            })
        finally:
            # Guard against a newer send having replaced the token
            if state.token is token:
                state.token = None
                state.is_sending = False
            if self._current is token:
                self._current = None
                engine.set_loading(False)
                self._idle.set()

    def _acquire(self, state: RuntimeState) -> CancellationToken:
        if self._current is not None and not self._current.cancelled:
            self._current.cancel("superseded")
        if state.token is not None and not state.token.cancelled:
            state.token.cancel("superseded")
        token = CancellationToken()
        state.token = token
        state.is_sending = True
        self._current = token
        return token
