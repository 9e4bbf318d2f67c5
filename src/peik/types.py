"""Shared data types for Peik."""

from __future__ import annotations

import copy
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


DEFAULT_CHAT_TITLE = "New chat"
IMAGE_CHAT_TITLE = "Image chat"


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def new_chat_id() -> str:
    return f"chat_{uuid.uuid4().hex}"


def new_message_id() -> str:
    return f"msg_{now_ms()}_{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    USER = "user"
    MODEL = "model"


@dataclass
class ImageData:
    """Base64 image attachment."""

    data: str
    mime_type: str

    def is_well_formed(self) -> bool:
        return (
            isinstance(self.data, str) and bool(self.data)
            and isinstance(self.mime_type, str) and bool(self.mime_type)
        )

    def to_dict(self) -> dict[str, str]:
        return {"data": self.data, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ImageData:
        return cls(data=raw.get("data", ""), mime_type=raw.get("mimeType", ""))


@dataclass
class Message:
    """A single chat message.

    A ``model`` message with empty content is a streaming placeholder.
    """

    role: Role
    content: str = ""
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)
    image: ImageData | None = None

    @property
    def is_placeholder(self) -> bool:
        return self.role == Role.MODEL and not self.content

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.image is not None:
            out["image"] = self.image.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        image = raw.get("image")
        return cls(
            role=Role(raw.get("role", "user")),
            content=raw.get("content") or "",
            id=raw.get("id") or new_message_id(),
            timestamp=raw.get("timestamp") or now_ms(),
            image=ImageData.from_dict(image) if image else None,
        )


@dataclass
class Chat:
    """A persisted conversation.

    ``messages`` is ``None`` for list views (not loaded yet) and a list
    once the full chat has been fetched.
    """

    id: str = field(default_factory=new_chat_id)
    title: str = DEFAULT_CHAT_TITLE
    messages: list[Message] | None = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = 0
    provider: str = ""
    model: str = ""

    def __post_init__(self) -> None:
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at

    @property
    def is_loaded(self) -> bool:
        return self.messages is not None

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages or [] if m.role == Role.USER)

    def touch(self) -> None:
        """Advance ``updated_at``; always strictly increasing."""
        self.updated_at = max(now_ms(), self.updated_at + 1)

    def summary(self) -> Chat:
        """Copy of this chat without its messages."""
        return Chat(
            id=self.id,
            title=self.title,
            messages=None,
            created_at=self.created_at,
            updated_at=self.updated_at,
            provider=self.provider,
            model=self.model,
        )

    def to_dict(self, include_messages: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "provider": self.provider,
            "modelName": self.model,
        }
        if include_messages and self.messages is not None:
            out["messages"] = [m.to_dict() for m in self.messages]
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Chat:
        messages = raw.get("messages")
        return cls(
            id=raw["id"],
            title=raw.get("title") or DEFAULT_CHAT_TITLE,
            messages=(
                [Message.from_dict(m) for m in messages]
                if messages is not None else None
            ),
            created_at=raw.get("createdAt", 0),
            updated_at=raw.get("updatedAt", 0),
            provider=raw.get("provider", ""),
            model=raw.get("modelName", ""),
        )

    def copy(self) -> Chat:
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the session engine for the presentation layer."""

    INIT = "init"
    CHAT_LIST_UPDATED = "chatListUpdated"
    ACTIVE_CHAT_SWITCHED = "activeChatSwitched"
    MESSAGE = "message"
    CHUNK = "chunk"
    STREAM_END = "streamEnd"
    MESSAGE_REMOVED = "messageRemoved"
    LOADING = "loading"
    ERROR = "error"
    WARNING = "warning"
    SUCCESS = "success"
    SETTINGS_SAVED = "settingsSaved"


@dataclass
class EngineEvent:
    """Event emitted via the EventEmitter."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
