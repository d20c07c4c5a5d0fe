"""Encoding and decoding of conversation documents.

Two on-disk shapes exist. The legacy shape is a bare JSON array of messages.
The versioned shape is an object with a ``version`` field and the messages
under ``conversation``. Decoding checks for the discriminator and upgrades
legacy data to a versioned ``ConversationDocument`` immediately, so nothing
downstream needs to know which shape was read.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from chatsphere.conversation.models import (
    DOCUMENT_VERSION,
    Conversation,
    ConversationDocument,
    DocumentMetadata,
    Message,
)
from chatsphere.sync.exceptions import MalformedDataError

logger = logging.getLogger(__name__)


def salvage_messages(data: Any) -> tuple[Conversation, int]:
    """Validate messages one by one, keeping the valid ones.

    Args:
        data: Anything; only a list contributes messages

    Returns:
        Tuple of (valid messages, number of entries rejected)
    """
    if not isinstance(data, list):
        return [], 0 if data is None else 1
    messages: Conversation = []
    rejected = 0
    for item in data:
        try:
            messages.append(Message.model_validate(item))
        except ValidationError:
            rejected += 1
    return messages, rejected


def _load_json(data: str | bytes) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedDataError(f"Conversation data is not valid JSON: {e}") from e


def parse_conversation_data(
    data: str | bytes | list | dict, strict: bool = True
) -> ConversationDocument:
    """Decode a conversation document in either the legacy or versioned shape.

    Args:
        data: Raw JSON text or an already-decoded JSON value
        strict: Raise on invalid messages instead of dropping them

    Returns:
        Versioned document; legacy input gets empty summaries and files

    Raises:
        MalformedDataError: Undecodable JSON, or invalid messages when strict
    """
    if isinstance(data, (str, bytes)):
        data = _load_json(data)

    if isinstance(data, dict) and "version" in data:
        raw_messages = data.get("conversation")
        body = {k: v for k, v in data.items() if k != "conversation"}
        if not isinstance(body.get("conversation_summaries"), list):
            body["conversation_summaries"] = []
        if not isinstance(body.get("uploaded_files"), dict):
            body["uploaded_files"] = {}
    else:
        raw_messages = data
        body = {"version": DOCUMENT_VERSION}
        logger.debug("Upgrading legacy conversation document")

    messages, rejected = salvage_messages(raw_messages)
    if rejected:
        if strict:
            raise MalformedDataError(
                f"Conversation document has {rejected} invalid message(s)"
            )
        logger.warning(f"Dropped {rejected} invalid message(s) while decoding")

    try:
        document = ConversationDocument.model_validate(body)
    except ValidationError as e:
        raise MalformedDataError(f"Invalid conversation document: {e}") from e
    document.conversation = messages
    return document


def create_export_data(
    conversation: Conversation,
    summaries: list[Any] | None = None,
    uploaded_files: dict[str, Any] | None = None,
    conversation_id: str | None = None,
    metadata: DocumentMetadata | None = None,
) -> ConversationDocument:
    """Build a version 1.2 document."""
    return ConversationDocument(
        version=DOCUMENT_VERSION,
        conversation=list(conversation),
        conversation_summaries=list(summaries or []),
        uploaded_files=dict(uploaded_files or {}),
        id=conversation_id,
        metadata=metadata,
    )


def encode_document(document: ConversationDocument, indent: int | None = None) -> str:
    return json.dumps(document.to_wire(), indent=indent, ensure_ascii=False)
