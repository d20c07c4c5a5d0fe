"""Data model for conversations, the remote index and conversation documents.

All models keep unknown fields (``extra="allow"``) so that attributes written by
other chat clients survive a round trip through this library. Field names are
snake_case in Python and camelCase on the wire.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

INDEX_VERSION = "1.0"
DOCUMENT_VERSION = "1.2"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_iso(ms: int) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def from_iso(value: str | None) -> int | None:
    """Parse an ISO-8601 timestamp into epoch milliseconds.

    Returns None for missing or unparseable values.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Part(_WireModel):
    """One content block of a message."""

    uuid: str | None = None
    text: str | None = None
    executable_code: dict[str, Any] | None = Field(default=None, alias="executableCode")
    code_execution_result: dict[str, Any] | None = Field(
        default=None, alias="codeExecutionResult"
    )
    inline_data: dict[str, Any] | None = Field(default=None, alias="inlineData")
    function_response: dict[str, Any] | None = Field(
        default=None, alias="functionResponse"
    )
    thought: bool | None = None
    hide: bool | None = None
    timestamp: int | None = None
    last_update: int | None = Field(default=None, alias="lastUpdate")
    deleted: bool | None = None

    @property
    def is_deleted(self) -> bool:
        return bool(self.deleted)

    @property
    def content_type(self) -> str:
        """Coarse content type used when fingerprinting parts."""
        if self.thought:
            return "thought"
        if self.executable_code:
            return "code"
        if self.code_execution_result:
            return "execution"
        if self.inline_data:
            return "image"
        if self.function_response:
            return "function"
        return "text"

    @property
    def effective_update(self) -> int:
        return self.last_update or self.timestamp or 0


class Message(_WireModel):
    """A single conversation turn."""

    role: Literal["user", "model", "function"]
    parts: list[Part] = Field(default_factory=list)
    timestamp: int | None = None
    last_update: int | None = Field(default=None, alias="lastUpdate")
    deleted: bool | None = None

    @property
    def is_deleted(self) -> bool:
        return bool(self.deleted)

    @property
    def effective_update(self) -> int:
        return self.last_update or self.timestamp or 0


Conversation = list[Message]

conversation_adapter = TypeAdapter(list[Message])


class IndexEntry(_WireModel):
    """Index metadata for one remote conversation."""

    id: str
    name: str = "New Conversation"
    auto_title: bool = Field(default=True, alias="autoTitle")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")
    file_id: str | None = Field(default=None, alias="fileId")
    size: int = 0
    tags: list[str] = Field(default_factory=list)
    summary: str | None = None

    @property
    def updated_ms(self) -> int:
        return from_iso(self.updated_at) or from_iso(self.created_at) or 0


class ConversationIndex(_WireModel):
    """Directory document listing every remote conversation."""

    version: str = INDEX_VERSION
    conversations: list[IndexEntry] = Field(default_factory=list)

    def get(self, conversation_id: str) -> IndexEntry | None:
        for entry in self.conversations:
            if entry.id == conversation_id:
                return entry
        return None

    def upsert(self, entry: IndexEntry) -> None:
        for i, existing in enumerate(self.conversations):
            if existing.id == entry.id:
                self.conversations[i] = entry
                return
        self.conversations.append(entry)

    def remove(self, conversation_id: str) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        return len(self.conversations) != before

    def sorted_by_recency(self) -> list[IndexEntry]:
        """Entries ordered most recently updated first."""
        return sorted(self.conversations, key=lambda e: e.updated_ms, reverse=True)

    def most_recent(self, exclude: str | None = None) -> IndexEntry | None:
        for entry in self.sorted_by_recency():
            if entry.id != exclude:
                return entry
        return None


class DocumentMetadata(_WireModel):
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")
    last_synced_at: str | None = Field(default=None, alias="lastSyncedAt")


class ConversationDocument(_WireModel):
    """Remote or exported conversation document (version 1.2)."""

    version: str = DOCUMENT_VERSION
    conversation: list[Message] = Field(default_factory=list)
    conversation_summaries: list[Any] = Field(default_factory=list)
    uploaded_files: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None
    metadata: DocumentMetadata | None = None


class ConversationMetadata(_WireModel):
    """Title, summary, tags and follow-up questions produced by the LLM."""

    title: str = "New Conversation"
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    next_questions: list[str] = Field(default_factory=list, alias="nextQuestions")


def load_conversation(data: Any) -> Conversation:
    """Validate JSON-ready data into a list of messages.

    Raises:
        pydantic.ValidationError: If the data is not a list of messages
    """
    return conversation_adapter.validate_python(data)


def dump_conversation(conversation: Conversation) -> list[dict[str, Any]]:
    return [message.to_wire() for message in conversation]


def conversation_snapshot(conversation: Conversation) -> str:
    """Canonical serialization used to detect unchanged content."""
    return json.dumps(
        dump_conversation(conversation), sort_keys=True, separators=(",", ":")
    )
