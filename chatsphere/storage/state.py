"""Local conversation state: the authoritative copy of the active conversation.

``LocalConversationState`` is the single writer of the persisted keys. Each
mutation is written through to storage before it returns, so any sync started
afterwards sees a snapshot at least as fresh as the mutation.
"""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from chatsphere.conversation import operations
from chatsphere.conversation.documents import (
    create_export_data,
    encode_document,
    parse_conversation_data,
)
from chatsphere.conversation.models import (
    Conversation,
    ConversationDocument,
    Message,
    dump_conversation,
    load_conversation,
)
from chatsphere.storage.local import KeyValueStorage

logger = logging.getLogger(__name__)

CONVERSATION_KEY = "conversation"
ACTIVE_ID_KEY = "active_conversation_id"
ACTIVE_TITLE_KEY = "active_conversation_title"
SUMMARIES_KEY = "conversation_summaries"
UPLOADED_FILES_KEY = "uploaded_files"


class LocalConversationState:
    """Persisted conversation, active id and title, summaries and uploaded files."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def _read_json(self, key: str, default: Any) -> Any:
        raw = self.storage.read(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt local value for {key}: {e}")
            return default

    def _write_json(self, key: str, value: Any) -> None:
        self.storage.write(key, json.dumps(value, ensure_ascii=False))

    # Conversation

    def load_conversation(self) -> Conversation:
        """Full working conversation, tombstones included.

        Corrupt data is logged and read as an empty conversation.
        """
        data = self._read_json(CONVERSATION_KEY, [])
        try:
            return load_conversation(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid local conversation: {e}")
            return []

    def save_conversation(self, conversation: Conversation) -> None:
        self._write_json(CONVERSATION_KEY, dump_conversation(conversation))

    def visible_conversation(self) -> Conversation:
        return operations.filter_deleted_messages(self.load_conversation())

    def has_content(self) -> bool:
        return bool(self.visible_conversation())

    def append_message(self, message: Message) -> Message:
        """Append and persist a message; returns the stamped message."""
        conversation = operations.append_message(self.load_conversation(), message)
        self.save_conversation(conversation)
        return conversation[-1]

    def delete_messages(self, indices: Iterable[int]) -> None:
        conversation = operations.delete_messages(self.load_conversation(), indices)
        self.save_conversation(conversation)

    def delete_model_turn(self, model_index: int) -> list[int]:
        """Tombstone a model turn together with its function-response turns."""
        conversation = self.load_conversation()
        indices = operations.find_function_response_indices(conversation, model_index)
        self.save_conversation(operations.delete_messages(conversation, indices))
        return indices

    def update_message_part(self, message_index: int, part_index: int, text: str) -> None:
        conversation = operations.update_message_part(
            self.load_conversation(), message_index, part_index, text
        )
        self.save_conversation(conversation)

    # Active conversation identity

    @property
    def active_id(self) -> str | None:
        return self.storage.read(ACTIVE_ID_KEY) or None

    @property
    def title(self) -> str | None:
        return self.storage.read(ACTIVE_TITLE_KEY) or None

    def set_active(self, conversation_id: str, title: str | None = None) -> None:
        self.storage.write(ACTIVE_ID_KEY, conversation_id)
        if title is not None:
            self.storage.write(ACTIVE_TITLE_KEY, title)

    def set_title(self, title: str) -> None:
        self.storage.write(ACTIVE_TITLE_KEY, title)

    def clear_active(self) -> None:
        self.storage.delete(ACTIVE_ID_KEY)
        self.storage.delete(ACTIVE_TITLE_KEY)

    # Summaries and uploaded files

    @property
    def summaries(self) -> list[Any]:
        value = self._read_json(SUMMARIES_KEY, [])
        return value if isinstance(value, list) else []

    def set_summaries(self, summaries: list[Any]) -> None:
        self._write_json(SUMMARIES_KEY, summaries)

    @property
    def uploaded_files(self) -> dict[str, Any]:
        value = self._read_json(UPLOADED_FILES_KEY, {})
        return value if isinstance(value, dict) else {}

    def set_uploaded_files(self, uploaded_files: dict[str, Any]) -> None:
        self._write_json(UPLOADED_FILES_KEY, uploaded_files)

    # Whole-state operations

    def to_document(self, conversation_id: str | None = None) -> ConversationDocument:
        return create_export_data(
            self.load_conversation(),
            self.summaries,
            self.uploaded_files,
            conversation_id=conversation_id,
        )

    def replace(
        self,
        document: ConversationDocument,
        conversation_id: str | None = None,
        title: str | None = None,
    ) -> None:
        """Replace local content wholesale with a document's content."""
        self.save_conversation(document.conversation)
        self.set_summaries(document.conversation_summaries)
        self.set_uploaded_files(document.uploaded_files)
        if conversation_id:
            self.set_active(conversation_id, title)

    def clear(self) -> None:
        """Empty conversation and no active identity."""
        self.save_conversation([])
        self.set_summaries([])
        self.set_uploaded_files({})
        self.clear_active()

    def export_to(self, path: str | Path) -> Path:
        path = Path(path)
        path.write_text(encode_document(self.to_document(), indent=2), encoding="utf-8")
        return path

    def import_from(self, path: str | Path) -> ConversationDocument:
        """Load a legacy or versioned document file into local state.

        The active id is left unchanged; the next sync uploads the
        imported content under it.

        Raises:
            MalformedDataError: If the file is not a valid conversation document
        """
        document = parse_conversation_data(Path(path).read_text(encoding="utf-8"))
        self.replace(document)
        return document
