"""Local persistent state."""

from chatsphere.storage.local import InMemoryStorage, KeyValueStorage, LocalDiskStorage
from chatsphere.storage.state import LocalConversationState

__all__ = [
    "InMemoryStorage",
    "KeyValueStorage",
    "LocalConversationState",
    "LocalDiskStorage",
]
