"""Reconcile a local and a remote copy of one conversation.

Messages are joined by their creation ``timestamp``. For each timestamp:

- present on one side only: kept (a local-only tombstone stays a tombstone)
- deleted on exactly one side: the non-deleted version wins
- deleted on both sides: the later ``lastUpdate`` wins
- deleted on neither side: parts are merged, and the message fields come
  from the side with the later ``lastUpdate`` (ties go to local)

Parts are paired by ``uuid`` first and by content fingerprint otherwise, so
the same content generated independently on two devices does not
duplicate. Conflicts are last-writer-wins on ``lastUpdate`` falling back to
``timestamp``. A concurrent edit with the older ``lastUpdate`` is discarded
without notice; that is a known limitation of this policy.

Nothing here performs I/O or raises on divergence. Structurally invalid
input degrades to picking one side wholesale.
"""

import hashlib
import json
import logging
import uuid as uuid_lib
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from chatsphere.conversation.documents import salvage_messages
from chatsphere.conversation.models import Conversation, Message, Part
from chatsphere.conversation.operations import latest_content_timestamp

logger = logging.getLogger(__name__)

FINGERPRINT_CHARS = 100

# Fixed namespace so back-filled part uuids are identical on every replica.
PART_UUID_NAMESPACE = uuid_lib.UUID("6f1f4a52-8a59-4d47-9a43-5c2f3e1b7d10")


@dataclass
class MergeResult:
    """Outcome of a merge.

    ``working`` holds every surviving message in timestamp order, including
    tombstoned messages and tombstoned parts, and is what local state should
    persist. ``conversation`` is the visible snapshot.
    """

    working: Conversation = field(default_factory=list)
    fallback: bool = False
    dropped: int = 0

    @property
    def conversation(self) -> Conversation:
        visible = []
        for message in self.working:
            if message.is_deleted:
                continue
            parts = [part for part in message.parts if not part.is_deleted]
            if len(parts) != len(message.parts):
                message = message.model_copy(update={"parts": parts})
            visible.append(message)
        return visible

    @property
    def tombstones(self) -> Conversation:
        return [message for message in self.working if message.is_deleted]


def _normalize(text: str) -> str:
    return " ".join(text[:FINGERPRINT_CHARS].split())


def part_fingerprint(part: Part, fallback_timestamp: int | None = None) -> str:
    """Content key for pairing parts that lack a shared uuid.

    Built from the part timestamp (or ``fallback_timestamp``), its coarse
    content type, and a hash of its leading content.
    """
    timestamp = part.timestamp or fallback_timestamp or 0
    if part.text:
        content = _normalize(part.text)
    elif part.executable_code:
        content = str(part.executable_code.get("code") or "")[:FINGERPRINT_CHARS]
    elif part.function_response:
        content = json.dumps(part.function_response, sort_keys=True)[:FINGERPRINT_CHARS]
    else:
        variant = part.inline_data or part.code_execution_result
        content = json.dumps(variant, sort_keys=True) if variant else ""
    digest = hashlib.md5(content.encode("utf-8")).hexdigest()
    return f"{timestamp}-{part.content_type}-{digest}"


def _later(local: Message | Part, remote: Message | Part) -> Message | Part:
    if local.effective_update >= remote.effective_update:
        return local
    return remote


def _merge_parts(
    local_parts: Sequence[Part], remote_parts: Sequence[Part], message_timestamp: int
) -> list[Part]:
    """Merge two part lists; tombstoned winners are kept for working state."""
    remote_by_uuid = {p.uuid: p for p in remote_parts if p.uuid}
    remote_matched: set[int] = set()
    pairs: list[tuple[Part | None, Part | None]] = []

    def fingerprint(part: Part) -> str:
        return part_fingerprint(part, message_timestamp)

    unmatched_local: list[Part] = []
    for part in local_parts:
        partner = remote_by_uuid.get(part.uuid) if part.uuid else None
        if partner is not None and id(partner) not in remote_matched:
            remote_matched.add(id(partner))
            pairs.append((part, partner))
        else:
            unmatched_local.append(part)

    for part in unmatched_local:
        key = fingerprint(part)
        partner = None
        for candidate in remote_parts:
            if id(candidate) in remote_matched or fingerprint(candidate) != key:
                continue
            # A uuid on both sides that differs still pairs: uuid drift.
            partner = candidate
            break
        if partner is not None:
            remote_matched.add(id(partner))
        pairs.append((part, partner))

    for part in remote_parts:
        if id(part) not in remote_matched:
            pairs.append((None, part))

    merged: list[Part] = []
    occurrences: dict[str, int] = {}
    for local, remote in pairs:
        if local is not None and remote is not None:
            winner = _later(local, remote)
            loser = remote if winner is local else local
        else:
            winner = local or remote
            loser = None
        part_uuid = winner.uuid or (loser.uuid if loser else None)
        if not part_uuid:
            key = fingerprint(winner)
            occurrences[key] = occurrences.get(key, 0) + 1
            part_uuid = str(
                uuid_lib.uuid5(
                    PART_UUID_NAMESPACE,
                    f"{message_timestamp}:{key}:{occurrences[key]}",
                )
            )
        if part_uuid != winner.uuid:
            winner = winner.model_copy(update={"uuid": part_uuid})
        merged.append(winner)

    merged.sort(key=lambda p: p.timestamp or message_timestamp)
    return merged


def _merge_message(local: Message, remote: Message) -> Message:
    base = _later(local, remote)
    timestamp = base.timestamp or 0
    parts = _merge_parts(local.parts, remote.parts, timestamp)
    last_update = max(local.last_update or 0, remote.last_update or 0) or None
    return base.model_copy(update={"parts": parts, "last_update": last_update})


def _by_timestamp(conversation: Conversation, side: str) -> tuple[dict[int, Message], int]:
    indexed: dict[int, Message] = {}
    missing = 0
    for message in conversation:
        if not message.timestamp:
            missing += 1
            continue
        if message.timestamp in indexed:
            logger.warning(
                f"Duplicate {side} message timestamp {message.timestamp}; keeping the last"
            )
        indexed[message.timestamp] = message
    if missing:
        logger.warning(f"Dropped {missing} {side} message(s) without a timestamp from merge")
    return indexed, missing


def _single(message: Message) -> Message:
    """One-sided merge: parts are sorted and every part gets a uuid."""
    parts = _merge_parts(message.parts, [], message.timestamp or 0)
    return message.model_copy(update={"parts": parts})


def _coerce(side: Any, name: str) -> tuple[Conversation, bool]:
    if isinstance(side, list) and all(isinstance(m, Message) for m in side):
        return side, True
    messages, rejected = salvage_messages(side)
    if rejected:
        logger.warning(f"{name} conversation has {rejected} invalid message(s)")
    return messages, rejected == 0


def _fallback(local: Conversation, remote: Conversation) -> MergeResult:
    local_time = latest_content_timestamp(local) or 0
    remote_time = latest_content_timestamp(remote) or 0
    chosen, name = (local, "local") if local_time >= remote_time else (remote, "remote")
    logger.warning(f"Malformed merge input; keeping the {name} conversation wholesale")
    ordered = sorted(
        (m for m in chosen if m.timestamp), key=lambda m: m.timestamp or 0
    )
    return MergeResult(working=[_single(m) for m in ordered], fallback=True)


def merge_conversations(local: Any, remote: Any) -> MergeResult:
    """Merge two replicas of a conversation.

    Args:
        local: Local messages (models or JSON-ready dicts)
        remote: Remote messages (models or JSON-ready dicts)

    Returns:
        MergeResult with the working conversation and its visible snapshot
    """
    local_messages, local_ok = _coerce(local if local is not None else [], "local")
    remote_messages, remote_ok = _coerce(remote if remote is not None else [], "remote")
    if not (local_ok and remote_ok):
        return _fallback(local_messages, remote_messages)

    local_index, local_missing = _by_timestamp(local_messages, "local")
    remote_index, remote_missing = _by_timestamp(remote_messages, "remote")

    working: Conversation = []
    for timestamp in sorted(set(local_index) | set(remote_index)):
        local_msg = local_index.get(timestamp)
        remote_msg = remote_index.get(timestamp)

        if local_msg is None or remote_msg is None:
            working.append(_single(local_msg or remote_msg))
        elif local_msg.is_deleted and remote_msg.is_deleted:
            working.append(_later(local_msg, remote_msg))
        elif local_msg.is_deleted:
            working.append(_single(remote_msg))
        elif remote_msg.is_deleted:
            working.append(_single(local_msg))
        else:
            working.append(_merge_message(local_msg, remote_msg))

    logger.debug(
        f"Merged {len(local_messages)} local and {len(remote_messages)} remote "
        f"messages into {len(working)}"
    )
    return MergeResult(working=working, dropped=local_missing + remote_missing)


def merge(local: Any, remote: Any) -> Conversation:
    """Visible result of merging ``local`` with ``remote``."""
    return merge_conversations(local, remote).conversation
