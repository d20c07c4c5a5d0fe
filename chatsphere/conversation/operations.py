"""Local mutations on a conversation.

Every helper returns a new list and leaves its input untouched. Deletion is
tombstoning: messages are flagged and stamped, never removed, so a later merge
can reconcile the delete against a remote copy that has not seen it.
"""

import logging
import uuid as uuid_lib
from collections.abc import Iterable

from chatsphere.conversation.models import Conversation, Message, Part, now_ms

logger = logging.getLogger(__name__)


def generate_part_uuid() -> str:
    return str(uuid_lib.uuid4())


def _stamp_part(part: Part, message_timestamp: int) -> Part:
    timestamp = part.timestamp or message_timestamp
    return part.model_copy(
        update={
            "uuid": part.uuid or generate_part_uuid(),
            "timestamp": timestamp,
            "last_update": part.last_update or timestamp,
        }
    )


def append_message(conversation: Conversation, message: Message) -> Conversation:
    """Append a message, assigning creation timestamps where missing.

    The message timestamp defaults to now. Each part inherits the message
    timestamp, gets ``lastUpdate`` equal to its timestamp and a fresh uuid.

    Args:
        conversation: Current conversation
        message: Message to append

    Returns:
        New conversation with the stamped message at the end
    """
    timestamp = message.timestamp or now_ms()
    stamped = message.model_copy(
        update={
            "timestamp": timestamp,
            "parts": [_stamp_part(part, timestamp) for part in message.parts],
        }
    )
    return [*conversation, stamped]


def filter_deleted_messages(conversation: Conversation) -> Conversation:
    """Visible snapshot: drop tombstoned messages."""
    return [message for message in conversation if not message.is_deleted]


def delete_messages(conversation: Conversation, indices: Iterable[int]) -> Conversation:
    """Tombstone the messages at ``indices`` and bump their ``lastUpdate``."""
    targets = set(indices)
    now = now_ms()
    result = []
    for index, message in enumerate(conversation):
        if index in targets:
            message = message.model_copy(update={"deleted": True, "last_update": now})
        result.append(message)
    return result


def update_message_part(
    conversation: Conversation, message_index: int, part_index: int, text: str
) -> Conversation:
    """Replace the text of one part.

    Raises:
        IndexError: If either index is out of range
    """
    message = conversation[message_index]
    part = message.parts[part_index]
    now = now_ms()
    edited = part.model_copy(
        update={
            "text": text,
            "timestamp": part.timestamp or message.timestamp or now,
            "last_update": now,
        }
    )
    parts = list(message.parts)
    parts[part_index] = edited
    result = list(conversation)
    result[message_index] = message.model_copy(update={"parts": parts})
    return result


def is_function_response_message(message: Message) -> bool:
    """A user turn whose parts are all function responses."""
    if message.role != "user" or not message.parts:
        return False
    return all(part.function_response for part in message.parts)


def find_function_response_indices(
    conversation: Conversation, model_index: int
) -> list[int]:
    """Indices to delete with a model turn: itself plus trailing function responses."""
    indices = [model_index]
    for i in range(model_index + 1, len(conversation)):
        if not is_function_response_message(conversation[i]):
            break
        indices.append(i)
    return indices


def _content_times(conversation: Conversation, include_deleted: bool = False) -> list[int]:
    times = []
    for message in conversation:
        if message.is_deleted and not include_deleted:
            continue
        times.extend(t for t in (message.timestamp, message.last_update) if t)
        for part in message.parts:
            if part.is_deleted and not include_deleted:
                continue
            times.extend(t for t in (part.timestamp, part.last_update) if t)
    return times


def latest_content_timestamp(conversation: Conversation) -> int | None:
    """Max ``timestamp``/``lastUpdate`` over visible messages and parts."""
    times = _content_times(conversation)
    return max(times) if times else None


def earliest_content_timestamp(conversation: Conversation) -> int | None:
    times = _content_times(conversation)
    return min(times) if times else None


def latest_change_timestamp(conversation: Conversation) -> int | None:
    """Max ``timestamp``/``lastUpdate`` including tombstoned messages and parts."""
    times = _content_times(conversation, include_deleted=True)
    return max(times) if times else None
