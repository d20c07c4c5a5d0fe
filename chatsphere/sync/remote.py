"""Index and conversation documents on the remote drive."""

import json
import logging
import secrets
import string
from dataclasses import dataclass

from pydantic import ValidationError

from chatsphere.conversation.documents import (
    create_export_data,
    encode_document,
    parse_conversation_data,
)
from chatsphere.conversation.models import (
    Conversation,
    ConversationDocument,
    ConversationIndex,
    DocumentMetadata,
    from_iso,
    now_ms,
    to_iso,
)
from chatsphere.conversation.operations import (
    earliest_content_timestamp,
    latest_change_timestamp,
    latest_content_timestamp,
)
from chatsphere.sync.exceptions import MalformedDataError, NotFoundError
from chatsphere.sync.store_client import DriveClient

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
CONVERSATION_FILENAME_PREFIX = "conversation-"

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_conversation_id() -> str:
    """Mint an id of the form ``conv-<epoch ms>-<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"conv-{now_ms()}-{suffix}"


def conversation_file_name(conversation_id: str) -> str:
    return f"{CONVERSATION_FILENAME_PREFIX}{conversation_id}.json"


@dataclass
class UploadResult:
    """Where a conversation document landed and what it contains."""

    file_id: str | None
    size: int
    updated_at: str
    created_at: str


class ConversationRemote:
    """Read and write the index and per-conversation documents."""

    def __init__(self, client: DriveClient):
        self.client = client

    async def fetch_index(self, token: str) -> ConversationIndex:
        """Fetch the index, or an empty one if none exists yet.

        Raises:
            MalformedDataError: The index is not valid JSON or has a bad shape
        """
        try:
            raw = await self.client.fetch(token, INDEX_FILENAME)
        except NotFoundError:
            logger.debug("No remote index yet")
            return ConversationIndex()
        try:
            return ConversationIndex.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            raise MalformedDataError(f"Remote index is malformed: {e}") from e

    async def upload_index(self, token: str, index: ConversationIndex) -> None:
        content = json.dumps(index.to_wire(), indent=2, ensure_ascii=False)
        await self.client.put(token, INDEX_FILENAME, content.encode("utf-8"))

    async def fetch_conversation(
        self, token: str, conversation_id: str
    ) -> ConversationDocument | None:
        """Fetch a conversation document; None if it does not exist.

        Invalid messages are dropped with a warning. Legacy documents are
        upgraded on read.

        Raises:
            MalformedDataError: The document is not valid JSON
        """
        try:
            raw = await self.client.fetch(token, conversation_file_name(conversation_id))
        except NotFoundError:
            return None
        return parse_conversation_data(raw, strict=False)

    async def upload_conversation(
        self, token: str, conversation_id: str, document: ConversationDocument
    ) -> UploadResult:
        """Upload a conversation document.

        ``updatedAt`` is derived from the document content, never from the
        time of the upload. With nothing visible left it comes from the
        tombstones, then from the document's previous ``updatedAt``; only a
        brand-new empty conversation is stamped with the current time.
        """
        now = now_ms()
        previous = document.metadata.updated_at if document.metadata else None
        latest = (
            latest_content_timestamp(document.conversation)
            or latest_change_timestamp(document.conversation)
            or from_iso(previous)
            or now
        )
        earliest = earliest_content_timestamp(document.conversation) or latest
        created_at = (
            document.metadata.created_at
            if document.metadata and document.metadata.created_at
            else to_iso(earliest)
        )
        payload = document.model_copy(
            update={
                "id": conversation_id,
                "metadata": DocumentMetadata(
                    created_at=created_at,
                    updated_at=to_iso(latest),
                    last_synced_at=to_iso(now),
                ),
            }
        )
        content = encode_document(payload).encode("utf-8")
        file_id = await self.client.put(
            token, conversation_file_name(conversation_id), content
        )
        return UploadResult(
            file_id=file_id,
            size=len(content),
            updated_at=to_iso(latest),
            created_at=created_at,
        )

    async def create_conversation(
        self, token: str, conversation: Conversation | None = None
    ) -> tuple[str, UploadResult]:
        """Upload a new conversation under a freshly minted id.

        The index is not touched; callers add the entry once this returns.
        """
        conversation_id = new_conversation_id()
        upload = await self.upload_conversation(
            token, conversation_id, create_export_data(conversation or [])
        )
        logger.info(f"Created remote conversation {conversation_id}")
        return conversation_id, upload

    async def delete_conversation(self, token: str, conversation_id: str) -> None:
        await self.client.delete(token, conversation_file_name(conversation_id))
