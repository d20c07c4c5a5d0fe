"""Conversation data model and local mutation helpers."""

from chatsphere.conversation.models import (
    ConversationDocument,
    ConversationIndex,
    ConversationMetadata,
    DocumentMetadata,
    IndexEntry,
    Message,
    Part,
)

__all__ = [
    "ConversationDocument",
    "ConversationIndex",
    "ConversationMetadata",
    "DocumentMetadata",
    "IndexEntry",
    "Message",
    "Part",
]
