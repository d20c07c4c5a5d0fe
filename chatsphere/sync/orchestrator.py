"""Sync orchestrator.

Coordinates the local conversation state with its remote copy: when to read
and write the drive, the "last synced" snapshot, mutual exclusion of sync
attempts, lazy creation of remote conversation records, and conversation
switch/create/delete/rename/title operations against both sides.

State machine::

    IDLE -> CHECKING -> LOADING -> SYNCED <-> SYNCING
      ^________________ errors ____________________|

Every public operation returns a ``SyncResult``; remote failures are
recorded in ``error`` and never raised to the caller. Local state is never
rolled back because of a remote failure.
"""

import asyncio
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from chatsphere.conversation.documents import create_export_data
from chatsphere.conversation.models import (
    ConversationDocument,
    ConversationIndex,
    ConversationMetadata,
    IndexEntry,
    conversation_snapshot,
)
from chatsphere.conversation.operations import filter_deleted_messages
from chatsphere.storage.state import LocalConversationState
from chatsphere.sync.auth import TokenProvider
from chatsphere.sync.exceptions import AuthUnavailableError, NotFoundError, SyncError
from chatsphere.sync.journal import SyncJournal
from chatsphere.sync.merge import merge_conversations
from chatsphere.sync.metadata import MetadataGenerationError, MetadataGenerator
from chatsphere.sync.remote import ConversationRemote, UploadResult, new_conversation_id

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"

# Private to the orchestrator; nothing else reads or writes these keys.
SNAPSHOT_KEY = "sync_last_snapshot"
RESET_PENDING_KEY = "sync_reset_pending"


def _digest(snapshot: str) -> str:
    return hashlib.sha256(snapshot.encode("utf-8")).hexdigest()


class SyncState(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    LOADING = "loading"
    SYNCED = "synced"
    SYNCING = "syncing"


class SyncStatus(str, Enum):
    """Outcome of an orchestrator operation."""

    UPLOADED = "uploaded"
    UNCHANGED = "unchanged"
    EMPTY = "empty"
    IN_FLIGHT = "in_flight"
    LOADING = "loading"
    UNAVAILABLE = "unavailable"
    LOADED = "loaded"
    SWITCHED = "switched"
    CREATED = "created"
    DELETED = "deleted"
    RENAMED = "renamed"
    TITLED = "titled"
    RESET = "reset"
    SKIPPED = "skipped"
    FAILED = "failed"


SKIPPED_STATUSES = frozenset(
    {
        SyncStatus.UNCHANGED,
        SyncStatus.EMPTY,
        SyncStatus.IN_FLIGHT,
        SyncStatus.LOADING,
        SyncStatus.UNAVAILABLE,
        SyncStatus.SKIPPED,
    }
)


@dataclass
class SyncResult:
    """Result of an orchestrator operation."""

    status: SyncStatus
    conversation_id: str | None = None
    error: str | None = None
    metadata: ConversationMetadata | None = None

    @property
    def ok(self) -> bool:
        return self.status is not SyncStatus.FAILED


class SyncOrchestrator:
    """Coordinate local conversation state with the remote drive."""

    def __init__(
        self,
        state: LocalConversationState,
        remote: ConversationRemote,
        auth: TokenProvider,
        metadata_generator: MetadataGenerator | None = None,
        journal: SyncJournal | None = None,
    ):
        """Initialize orchestrator.

        Args:
            state: Local conversation state (authoritative)
            remote: Remote index and conversation documents
            auth: Bearer-token source
            metadata_generator: LLM collaborator for titles; titles are
                skipped when absent
            journal: Optional operation journal
        """
        self.local = state
        self.remote = remote
        self.auth = auth
        self.metadata_generator = metadata_generator
        self.journal = journal

        self._state = SyncState.IDLE
        self._available = False
        self._loaded = False
        self._error: str | None = None
        # Bumped whenever local identity changes under an in-flight operation.
        self._generation = 0
        self._index_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self._conversations: list[IndexEntry] = []

    # Read-only views

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def available(self) -> bool:
        return self._available

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def conversations(self) -> list[IndexEntry]:
        """Index entries as of the last index read or write."""
        return list(self._conversations)

    @property
    def needs_sync(self) -> bool:
        return not self._is_synced(self._current_snapshot())

    # Helpers

    def _current_snapshot(self) -> str:
        return conversation_snapshot(self.local.load_conversation())

    @property
    def _reset_pending(self) -> bool:
        return self.local.storage.read(RESET_PENDING_KEY) == "1"

    def _set_reset_pending(self, pending: bool) -> None:
        if pending:
            self.local.storage.write(RESET_PENDING_KEY, "1")
        else:
            self.local.storage.delete(RESET_PENDING_KEY)

    def _mark_synced(self, snapshot: str | None) -> None:
        """Remember the last synced content, or None to force the next sync."""
        if snapshot is None:
            self.local.storage.delete(SNAPSHOT_KEY)
        else:
            self.local.storage.write(SNAPSHOT_KEY, _digest(snapshot))

    def _is_synced(self, snapshot: str) -> bool:
        return self.local.storage.read(SNAPSHOT_KEY) == _digest(snapshot)

    def _record(
        self,
        op_type: str,
        result: SyncResult,
        metadata: dict | None = None,
    ) -> SyncResult:
        if self.journal is not None:
            if result.status is SyncStatus.FAILED:
                status = "failed"
            elif result.status in SKIPPED_STATUSES:
                status = "skipped"
            else:
                status = "success"
            try:
                self.journal.record(
                    op_type,
                    result.conversation_id,
                    status,
                    error=result.error,
                    metadata={"result": result.status.value, **(metadata or {})},
                )
            except OSError as e:
                # The operation itself already happened; only the record is lost.
                logger.warning(f"Could not journal {op_type} for {result.conversation_id}: {e}")
        return result

    def _fail(self, op_type: str, error: Exception, conversation_id: str | None) -> SyncResult:
        self._error = str(error)
        self._state = SyncState.IDLE
        logger.error(f"{op_type} failed for {conversation_id}: {error}")
        return self._record(
            op_type, SyncResult(SyncStatus.FAILED, conversation_id, error=str(error))
        )

    def _busy_result(self) -> SyncResult | None:
        """Result for a caller arriving while another operation runs, else None."""
        if self._state in (SyncState.CHECKING, SyncState.LOADING):
            return SyncResult(SyncStatus.LOADING, self.local.active_id)
        if self._state is SyncState.SYNCING:
            return SyncResult(SyncStatus.IN_FLIGHT, self.local.active_id)
        return None

    def _settle(self) -> None:
        self._state = SyncState.SYNCED if self._loaded else SyncState.IDLE

    async def _token(self) -> str:
        token = await self.auth.get_access_token()
        if not token:
            raise AuthUnavailableError("No access token available")
        return token

    async def _update_index(
        self, token: str, mutate: Callable[[ConversationIndex], bool]
    ) -> ConversationIndex:
        """Fetch, mutate and upload the index under a lock.

        ``mutate`` returns False to skip the upload.
        """
        async with self._index_lock:
            index = await self.remote.fetch_index(token)
            if mutate(index):
                await self.remote.upload_index(token, index)
            self._conversations = list(index.conversations)
            return index

    async def _upload(
        self,
        token: str,
        conversation_id: str,
        document: ConversationDocument,
        title: str | None,
    ) -> None:
        """Upload a document, then stamp its index entry (in that order)."""
        upload = await self.remote.upload_conversation(token, conversation_id, document)
        await self._stamp_index(token, conversation_id, upload, title)

    async def _stamp_index(
        self,
        token: str,
        conversation_id: str,
        upload: UploadResult,
        title: str | None,
        auto_title: bool = True,
    ) -> None:
        def stamp(index: ConversationIndex) -> bool:
            entry = index.get(conversation_id)
            if entry is None:
                logger.info(f"Adding index entry for {conversation_id}")
                entry = IndexEntry(
                    id=conversation_id,
                    name=title or DEFAULT_TITLE,
                    auto_title=auto_title,
                    created_at=upload.created_at,
                )
            entry.updated_at = upload.updated_at
            entry.size = upload.size
            entry.file_id = upload.file_id
            index.upsert(entry)
            return True

        await self._update_index(token, stamp)

    # Operations

    async def check_availability(self) -> bool:
        """Ask the auth collaborator whether a usable token exists.

        Sets the availability flag that gates all sync-dependent controls.
        """
        if self._state is not SyncState.IDLE:
            self._available = self.auth.is_available()
            return self._available

        self._state = SyncState.CHECKING
        try:
            self._available = self.auth.is_available() and bool(
                await self.auth.get_access_token()
            )
        finally:
            self._state = SyncState.IDLE
        logger.debug(f"Remote sync available: {self._available}")
        return self._available

    async def load_initial(self, sync_after_load: bool = True) -> SyncResult:
        """Reconcile local state with the remote copy, once per process.

        If the merged result differs from the remote copy, a follow-up
        ``sync`` pushes it upstream (unless ``sync_after_load`` is False, in
        which case ``needs_sync`` stays True).
        """
        if self._loaded:
            return SyncResult(SyncStatus.SKIPPED, self.local.active_id)
        busy = self._busy_result()
        if busy is not None:
            return busy
        self._loaded = True

        if not await self.check_availability():
            self._loaded = False
            return SyncResult(SyncStatus.UNAVAILABLE, self.local.active_id)

        self._state = SyncState.LOADING
        self._error = None
        active_id = self.local.active_id
        diverged = False
        generation = self._generation
        try:
            token = await self._token()
            index = await self.remote.fetch_index(token)
            self._conversations = list(index.conversations)
            if generation != self._generation:
                return self._superseded("load", active_id)

            if active_id:
                entry = index.get(active_id)
                if entry is None:
                    # Possibly not uploaded yet; keep id and title for retry.
                    logger.warning(f"Active conversation {active_id} not found in index")
                else:
                    diverged = await self._reconcile(token, active_id, entry, generation)
                    if diverged is None:
                        return self._superseded("load", active_id)
            elif not self.local.has_content():
                latest = index.most_recent()
                if latest is not None:
                    if not await self._load_target(token, latest, generation):
                        return self._superseded("load", active_id)
                    active_id = latest.id
            else:
                self._mark_synced(None)
                diverged = True
        except SyncError as e:
            self._loaded = False
            return self._fail("load", e, active_id)

        self._state = SyncState.SYNCED
        result = self._record("load", SyncResult(SyncStatus.LOADED, active_id))
        if diverged and sync_after_load:
            logger.info("Local state diverged from remote after load, syncing")
            return await self.sync()
        return result

    async def _reconcile(
        self, token: str, conversation_id: str, entry: IndexEntry, generation: int
    ) -> bool | None:
        """Merge the remote copy into local state; True if local now differs.

        Returns None without touching local state if a reset happened while
        the remote copy was being fetched.
        """
        document = await self.remote.fetch_conversation(token, conversation_id)
        if generation != self._generation:
            return None
        if document is None:
            self._mark_synced(None)
            return True

        merged = merge_conversations(self.local.load_conversation(), document.conversation)
        self.local.save_conversation(merged.working)
        if not self.local.summaries:
            self.local.set_summaries(document.conversation_summaries)
        self.local.set_uploaded_files({**document.uploaded_files, **self.local.uploaded_files})
        self.local.set_title(entry.name)

        remote_snapshot = conversation_snapshot(document.conversation)
        merged_snapshot = conversation_snapshot(merged.working)
        self._mark_synced(remote_snapshot)
        if merged.fallback:
            logger.warning(f"Merge of {conversation_id} fell back to one side")
        return merged_snapshot != remote_snapshot

    async def _load_target(
        self, token: str, entry: IndexEntry, generation: int | None = None
    ) -> bool:
        """Replace local state with a remote conversation.

        With ``generation`` given, returns False and leaves local state alone
        if it changed during the fetch.
        """
        document = await self.remote.fetch_conversation(token, entry.id)
        if generation is not None and generation != self._generation:
            return False
        if document is None:
            raise NotFoundError(f"Conversation {entry.id} has no document", 404)
        self._generation += 1
        self.local.replace(document, entry.id, entry.name)
        self._mark_synced(conversation_snapshot(document.conversation))
        self._set_reset_pending(False)
        return True

    async def sync(self) -> SyncResult:
        """Push local content to the remote store.

        No-op while another operation is in flight, while the initial load
        runs, or when local content equals the last synced snapshot.
        """
        busy = self._busy_result()
        if busy is not None:
            logger.debug(f"Sync skipped: {busy.status.value}")
            return busy

        working = self.local.load_conversation()
        snapshot = conversation_snapshot(working)
        active_id = self.local.active_id
        title = self.local.title
        summaries = self.local.summaries
        uploaded_files = self.local.uploaded_files
        if not self._reset_pending and self._is_synced(snapshot):
            return SyncResult(SyncStatus.UNCHANGED, active_id)
        if not active_id and not filter_deleted_messages(working):
            return SyncResult(SyncStatus.EMPTY)

        self._state = SyncState.SYNCING
        self._error = None
        generation = self._generation
        try:
            token = await self._token()
            if generation != self._generation:
                return self._superseded("sync", active_id)

            if self._reset_pending or not active_id:
                active_id = new_conversation_id()
                self._set_reset_pending(False)
                self.local.set_active(active_id, title or DEFAULT_TITLE)
                logger.info(f"Minted conversation id {active_id}")
            else:
                remote_doc = await self.remote.fetch_conversation(token, active_id)
                if generation != self._generation:
                    return self._superseded("sync", active_id)
                if remote_doc is not None:
                    remote_snapshot = conversation_snapshot(remote_doc.conversation)
                    if remote_snapshot != snapshot and not self._is_synced(remote_snapshot):
                        logger.info(f"Remote copy of {active_id} changed, merging")
                        merged = merge_conversations(
                            self.local.load_conversation(), remote_doc.conversation
                        )
                        self.local.save_conversation(merged.working)
                working = self.local.load_conversation()
                snapshot = conversation_snapshot(working)

            document = create_export_data(working, summaries, uploaded_files)
            await self._upload(token, active_id, document, title)
        except AuthUnavailableError as e:
            self._settle()
            return self._record(
                "sync", SyncResult(SyncStatus.UNAVAILABLE, active_id, error=str(e))
            )
        except SyncError as e:
            return self._fail("sync", e, active_id)

        if generation == self._generation:
            self._mark_synced(snapshot)
        self._settle()
        logger.info(f"Synced conversation {active_id}")
        return self._record("sync", SyncResult(SyncStatus.UPLOADED, active_id))

    def _superseded(self, op_type: str, conversation_id: str | None) -> SyncResult:
        # A reset replaced local state mid-operation; its background save owns
        # the captured content.
        logger.info(f"{op_type} of {conversation_id} superseded by a reset")
        self._settle()
        return self._record(op_type, SyncResult(SyncStatus.SKIPPED, conversation_id))

    async def _save_current(self, token: str) -> None:
        """Best-effort save of unsynced local changes before leaving them."""
        if not self.needs_sync or not self.local.has_content():
            return
        conversation_id = self.local.active_id or new_conversation_id()
        try:
            await self._upload(
                token,
                conversation_id,
                self.local.to_document(),
                self.local.title,
            )
            logger.info(f"Saved {conversation_id} before switching away")
        except SyncError as e:
            logger.warning(f"Could not save {conversation_id} before switching: {e}")

    async def _switch(self, conversation_id: str) -> SyncResult:
        token = await self._token()
        await self._save_current(token)
        index = await self.remote.fetch_index(token)
        self._conversations = list(index.conversations)
        entry = index.get(conversation_id) or IndexEntry(id=conversation_id)
        await self._load_target(token, entry)
        return SyncResult(SyncStatus.SWITCHED, conversation_id)

    async def switch_conversation(self, conversation_id: str) -> SyncResult:
        """Make another remote conversation the active one.

        Unsynced changes of the current conversation are saved first on a
        best-effort basis; the target then replaces local state wholesale.
        """
        if conversation_id == self.local.active_id and not self._reset_pending:
            return SyncResult(SyncStatus.SKIPPED, conversation_id)
        busy = self._busy_result()
        if busy is not None:
            return busy

        self._state = SyncState.SYNCING
        self._error = None
        try:
            result = await self._switch(conversation_id)
        except SyncError as e:
            return self._fail("switch", e, conversation_id)
        self._settle()
        return self._record("switch", result)

    async def create_conversation(self, name: str = DEFAULT_TITLE) -> SyncResult:
        """Create an empty remote conversation and switch to it."""
        busy = self._busy_result()
        if busy is not None:
            return busy

        self._state = SyncState.SYNCING
        self._error = None
        conversation_id = None
        try:
            token = await self._token()
            await self._save_current(token)
            conversation_id, upload = await self.remote.create_conversation(token)
            await self._stamp_index(
                token, conversation_id, upload, name, auto_title=name == DEFAULT_TITLE
            )
        except SyncError as e:
            return self._fail("create", e, conversation_id)

        self._generation += 1
        self.local.clear()
        self.local.set_active(conversation_id, name)
        self._mark_synced(conversation_snapshot([]))
        self._set_reset_pending(False)
        self._settle()
        return self._record("create", SyncResult(SyncStatus.CREATED, conversation_id))

    async def delete_conversation(self, conversation_id: str) -> SyncResult:
        """Delete a conversation remotely.

        Deleting the active conversation switches to the most recently
        updated remaining one, or clears local state if none remain.
        """
        busy = self._busy_result()
        if busy is not None:
            return busy

        self._state = SyncState.SYNCING
        self._error = None
        try:
            token = await self._token()
            await self.remote.delete_conversation(token, conversation_id)
            index = await self._update_index(token, lambda i: i.remove(conversation_id))

            if conversation_id == self.local.active_id:
                successor = index.most_recent()
                if successor is not None:
                    await self._load_target(token, successor)
                    logger.info(f"Switched to {successor.id} after delete")
                else:
                    self._generation += 1
                    self.local.clear()
                    self._mark_synced(conversation_snapshot([]))
        except SyncError as e:
            return self._fail("delete", e, conversation_id)

        self._settle()
        return self._record("delete", SyncResult(SyncStatus.DELETED, conversation_id))

    async def rename_conversation(self, conversation_id: str, name: str) -> SyncResult:
        """Rename a conversation and stop automatic titling for it.

        ``updatedAt`` is left alone: a rename is not a content change.
        """
        busy = self._busy_result()
        if busy is not None:
            return busy

        self._state = SyncState.SYNCING
        self._error = None

        def rename(index: ConversationIndex) -> bool:
            entry = index.get(conversation_id)
            if entry is None:
                raise NotFoundError(f"Conversation {conversation_id} not in index", 404)
            entry.name = name
            entry.auto_title = False
            return True

        try:
            token = await self._token()
            await self._update_index(token, rename)
        except SyncError as e:
            return self._fail("rename", e, conversation_id)

        if conversation_id == self.local.active_id:
            self.local.set_title(name)
        self._settle()
        return self._record("rename", SyncResult(SyncStatus.RENAMED, conversation_id))

    async def generate_and_update_title(self) -> SyncResult:
        """Generate title, summary and tags for the active conversation.

        Only runs while the index entry has ``autoTitle`` set; a user rename
        clears it and this becomes a no-op. The flag is checked again right
        before writing so a rename during generation wins.
        """
        conversation_id = self.local.active_id
        if not conversation_id or self.metadata_generator is None:
            return SyncResult(SyncStatus.SKIPPED, conversation_id)
        busy = self._busy_result()
        if busy is not None:
            return busy

        self._state = SyncState.SYNCING
        self._error = None
        try:
            token = await self._token()
            index = await self.remote.fetch_index(token)
            entry = index.get(conversation_id)
            if entry is None or not entry.auto_title:
                self._settle()
                return SyncResult(SyncStatus.SKIPPED, conversation_id)

            metadata = await self.metadata_generator.generate_metadata(
                self.local.visible_conversation(),
                current_title=entry.name,
                current_tags=entry.tags,
            )

            def apply(index: ConversationIndex) -> bool:
                current = index.get(conversation_id)
                if current is None or not current.auto_title:
                    return False
                current.name = metadata.title
                current.summary = metadata.summary
                current.tags = metadata.tags
                return True

            index = await self._update_index(token, apply)
        except (SyncError, MetadataGenerationError) as e:
            return self._fail("title", e, conversation_id)

        entry = index.get(conversation_id)
        self._settle()
        if entry is None or not entry.auto_title:
            return SyncResult(SyncStatus.SKIPPED, conversation_id)
        if conversation_id == self.local.active_id:
            self.local.set_title(metadata.title)
        return self._record(
            "title",
            SyncResult(SyncStatus.TITLED, conversation_id, metadata=metadata),
            metadata={"title": metadata.title},
        )

    async def reset_current_conversation(self) -> SyncResult:
        """Start a fresh conversation locally.

        Clears the active id, title and content immediately and makes the next
        ``sync`` mint a new id. A non-empty old conversation is saved to the
        remote store in the background; see ``wait_for_background``.
        """
        old_id = self.local.active_id
        old_title = self.local.title
        old_document = self.local.to_document()
        had_changes = self.needs_sync

        self._generation += 1
        self._set_reset_pending(True)
        self.local.clear()
        self._mark_synced(conversation_snapshot([]))
        logger.info(f"Reset conversation (was {old_id})")

        if filter_deleted_messages(old_document.conversation) and (
            had_changes or not old_id
        ):
            task = asyncio.create_task(
                self._save_abandoned(old_id or new_conversation_id(), old_document, old_title)
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return self._record("reset", SyncResult(SyncStatus.RESET, old_id))

    async def _save_abandoned(
        self, conversation_id: str, document: ConversationDocument, title: str | None
    ) -> None:
        try:
            token = await self._token()
            await self._upload(token, conversation_id, document, title)
            logger.info(f"Saved abandoned conversation {conversation_id}")
            self._record("reset", SyncResult(SyncStatus.UPLOADED, conversation_id))
        except SyncError as e:
            logger.warning(f"Background save of {conversation_id} failed: {e}")
            self._record(
                "reset", SyncResult(SyncStatus.FAILED, conversation_id, error=str(e))
            )

    async def wait_for_background(self) -> None:
        """Wait for background saves started by ``reset_current_conversation``."""
        if self._background:
            await asyncio.gather(*list(self._background))
