"""Tests for index and conversation documents on the remote drive."""

import re

import pytest

from chatsphere.conversation.documents import create_export_data
from chatsphere.conversation.models import (
    ConversationIndex,
    DocumentMetadata,
    IndexEntry,
    to_iso,
)
from chatsphere.sync.exceptions import MalformedDataError
from chatsphere.sync.remote import (
    conversation_file_name,
    new_conversation_id,
)

TOKEN = "test-token"


class TestConversationIds:
    """Id minting and file naming."""

    def test_id_format(self):
        assert re.fullmatch(r"conv-\d+-[0-9a-z]{9}", new_conversation_id())

    def test_ids_are_unique(self):
        assert len({new_conversation_id() for _ in range(50)}) == 50

    def test_file_name(self):
        assert conversation_file_name("conv-1") == "conversation-conv-1.json"


class TestIndex:
    """Index document."""

    @pytest.mark.asyncio
    async def test_missing_index_is_empty(self, remote):
        index = await remote.fetch_index(TOKEN)
        assert index.conversations == []

    @pytest.mark.asyncio
    async def test_upload_then_fetch(self, remote, drive):
        index = ConversationIndex(conversations=[IndexEntry(id="conv-1", name="Trip")])

        await remote.upload_index(TOKEN, index)

        assert drive.read_json("index.json")["conversations"][0]["autoTitle"] is True
        fetched = await remote.fetch_index(TOKEN)
        assert fetched.get("conv-1").name == "Trip"

    @pytest.mark.asyncio
    async def test_malformed_index_raises(self, remote, drive):
        await remote.upload_index(TOKEN, ConversationIndex())
        drive.find("index.json")["content"] = b"not json"

        with pytest.raises(MalformedDataError):
            await remote.fetch_index(TOKEN)


class TestConversationDocuments:
    """Per-conversation documents."""

    @pytest.mark.asyncio
    async def test_missing_conversation_is_none(self, remote):
        assert await remote.fetch_conversation(TOKEN, "conv-none") is None

    @pytest.mark.asyncio
    async def test_upload_stamps_content_times(self, remote, drive, make_message):
        document = create_export_data(
            [make_message(1000), make_message(5000, last_update=7000)]
        )

        result = await remote.upload_conversation(TOKEN, "conv-1", document)

        stored = drive.read_json("conversation-conv-1.json")
        assert stored["id"] == "conv-1"
        assert stored["metadata"]["updatedAt"] == to_iso(7000)
        assert stored["metadata"]["createdAt"] == to_iso(1000)
        assert "lastSyncedAt" in stored["metadata"]
        assert result.updated_at == to_iso(7000)
        assert result.size == len(drive.find("conversation-conv-1.json")["content"])
        assert result.file_id == drive.find("conversation-conv-1.json")["id"]

    @pytest.mark.asyncio
    async def test_fully_deleted_conversation_dates_from_tombstones(
        self, remote, drive, make_message
    ):
        document = create_export_data(
            [
                make_message(1000, deleted=True, last_update=3000),
                make_message(2000, deleted=True, last_update=4000),
            ]
        )

        result = await remote.upload_conversation(TOKEN, "conv-1", document)

        assert result.updated_at == to_iso(4000)
        assert drive.read_json("conversation-conv-1.json")["metadata"]["updatedAt"] == to_iso(4000)

    @pytest.mark.asyncio
    async def test_empty_conversation_keeps_previous_updated_at(self, remote):
        document = create_export_data(
            [], metadata=DocumentMetadata(updated_at="2021-05-01T00:00:00.000Z")
        )

        result = await remote.upload_conversation(TOKEN, "conv-1", document)

        assert result.updated_at == "2021-05-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_upload_keeps_created_at(self, remote, drive, make_message):
        document = create_export_data(
            [make_message(5000)],
            metadata=DocumentMetadata(created_at="2020-01-01T00:00:00.000Z"),
        )

        result = await remote.upload_conversation(TOKEN, "conv-1", document)

        assert result.created_at == "2020-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_fetch_round_trip(self, remote, make_message):
        document = create_export_data([make_message(1, "hello")], summaries=[{"s": 1}])
        await remote.upload_conversation(TOKEN, "conv-1", document)

        fetched = await remote.fetch_conversation(TOKEN, "conv-1")

        assert fetched.id == "conv-1"
        assert fetched.conversation[0].parts[0].text == "hello"
        assert fetched.conversation_summaries == [{"s": 1}]

    @pytest.mark.asyncio
    async def test_legacy_document_is_upgraded(self, remote, drive):
        await remote.upload_index(TOKEN, ConversationIndex())
        drive.write_json(
            "conversation-conv-old.json",
            [{"role": "user", "timestamp": 1, "parts": [{"text": "legacy"}]}],
        )

        fetched = await remote.fetch_conversation(TOKEN, "conv-old")

        assert fetched.version == "1.2"
        assert fetched.conversation[0].parts[0].text == "legacy"

    @pytest.mark.asyncio
    async def test_invalid_messages_dropped(self, remote, drive):
        await remote.upload_index(TOKEN, ConversationIndex())
        drive.write_json(
            "conversation-conv-bad.json",
            {
                "version": "1.2",
                "conversation": [
                    {"role": "narrator"},
                    {"role": "user", "timestamp": 1, "parts": []},
                ],
            },
        )

        fetched = await remote.fetch_conversation(TOKEN, "conv-bad")

        assert len(fetched.conversation) == 1

    @pytest.mark.asyncio
    async def test_delete(self, remote, drive, make_message):
        await remote.upload_conversation(TOKEN, "conv-1", create_export_data([make_message(1)]))

        await remote.delete_conversation(TOKEN, "conv-1")

        assert drive.find("conversation-conv-1.json") is None

    @pytest.mark.asyncio
    async def test_create_conversation_mints_id(self, remote, drive, make_message):
        conversation_id, upload = await remote.create_conversation(
            TOKEN, [make_message(1, "first")]
        )

        assert conversation_id.startswith("conv-")
        assert upload.file_id == drive.find(conversation_file_name(conversation_id))["id"]
        assert (await remote.fetch_index(TOKEN)).conversations == []
