"""Session engine and its managers."""

from peik.core.chats import ChatLifecycleManager
from peik.core.dispatcher import MessageDispatcher, RuntimeState, SendOutcome
from peik.core.engine import SessionEngine
from peik.core.saver import DurableSaveManager

__all__ = [
    "ChatLifecycleManager",
    "DurableSaveManager",
    "MessageDispatcher",
    "RuntimeState",
    "SendOutcome",
    "SessionEngine",
]
