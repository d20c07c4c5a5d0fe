"""Tests for the drive client: id caching, retries and error mapping."""

import httpx
import pytest

from chatsphere.storage.local import InMemoryStorage
from chatsphere.sync.exceptions import (
    ConflictError,
    NotFoundError,
    RemoteStoreError,
    TransientError,
    UnauthorizedError,
)
from chatsphere.sync.store_client import DriveClient, raise_for_status

TOKEN = "test-token"


class TestRaiseForStatus:
    """HTTP status to exception mapping."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, UnauthorizedError),
            (403, UnauthorizedError),
            (404, NotFoundError),
            (409, ConflictError),
            (412, ConflictError),
            (429, TransientError),
            (500, TransientError),
            (503, TransientError),
            (400, RemoteStoreError),
        ],
    )
    def test_mapping(self, status, error):
        with pytest.raises(error) as exc_info:
            raise_for_status(httpx.Response(status), "Fetch index.json")
        assert exc_info.value.status_code == status
        assert "Fetch index.json" in str(exc_info.value)

    def test_success_passes(self):
        raise_for_status(httpx.Response(200), "Fetch")


class TestPutAndFetch:
    """Named file upload and download."""

    @pytest.mark.asyncio
    async def test_put_creates_folders_and_file(self, drive_client, drive):
        item_id = await drive_client.put(TOKEN, "index.json", b'{"a": 1}')

        assert drive.find_folder(".chatsphere")
        assert drive.find_folder("conversations")
        assert drive.find("index.json")["id"] == item_id
        assert drive.find("index.json")["parent"] == drive.find_folder("conversations")["id"]
        assert await drive_client.fetch(TOKEN, "index.json") == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, drive_client, drive):
        await drive_client.put(TOKEN, "index.json", b"{}")
        assert all(r.headers["Authorization"] == f"Bearer {TOKEN}" for r in drive.requests)

    @pytest.mark.asyncio
    async def test_second_put_uses_cached_id(self, drive_client, drive):
        item_id = await drive_client.put(TOKEN, "index.json", b"1")
        drive.requests.clear()

        assert await drive_client.put(TOKEN, "index.json", b"2") == item_id

        assert len(drive.requests) == 1
        assert drive.requests[0].url.path.endswith(f"/items/{item_id}/content")
        assert drive.find("index.json")["content"] == b"2"

    @pytest.mark.asyncio
    async def test_fetch_missing_raises(self, drive_client):
        with pytest.raises(NotFoundError):
            await drive_client.fetch(TOKEN, "conversation-none.json")

    @pytest.mark.asyncio
    async def test_stale_cached_id_is_searched_again(self, drive_client, drive, storage):
        """Another device replaced the file; the cached id now 404s."""
        old_id = await drive_client.put(TOKEN, "index.json", b"old")
        folder = drive.find_folder("conversations")
        del drive.items[old_id]
        drive._create("index.json", folder["id"], content=b"new")

        assert await drive_client.fetch(TOKEN, "index.json") == b"new"
        assert storage.read("drive_item:file:index.json") == drive.find("index.json")["id"]

    @pytest.mark.asyncio
    async def test_put_recreates_after_stale_id(self, drive_client, drive):
        old_id = await drive_client.put(TOKEN, "index.json", b"old")
        del drive.items[old_id]

        new_id = await drive_client.put(TOKEN, "index.json", b"again")

        assert new_id != old_id
        assert drive.find("index.json")["content"] == b"again"

    @pytest.mark.asyncio
    async def test_put_recovers_from_stale_folder(self, drive_client, drive):
        await drive_client.folder_id(TOKEN)
        folder = drive.find_folder("conversations")
        del drive.items[folder["id"]]

        await drive_client.put(TOKEN, "index.json", b"{}")

        assert drive.find("index.json")["parent"] == drive.find_folder("conversations")["id"]


class TestConflicts:
    """Write conflicts are retried exactly once."""

    @pytest.mark.asyncio
    async def test_single_conflict_is_retried(self, drive_client, drive):
        drive.fail("PUT", "index.json", 409)

        await drive_client.put(TOKEN, "index.json", b"{}")

        assert drive.find("index.json")["content"] == b"{}"

    @pytest.mark.asyncio
    async def test_repeated_conflict_raises(self, drive_client, drive):
        drive.fail("PUT", "index.json", 409, times=2)

        with pytest.raises(ConflictError):
            await drive_client.put(TOKEN, "index.json", b"{}")

    @pytest.mark.asyncio
    async def test_folder_created_concurrently(self, drive, storage):
        created = []

        def handler(request):
            if request.method == "POST" and not created:
                created.append(drive._create(".chatsphere", None, folder=True))
                return httpx.Response(409, json={"error": {"code": "nameAlreadyExists"}})
            return drive.handler(request)

        client = DriveClient(
            storage,
            base_url="https://graph.test/v1.0",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        folder_id = await client.folder_id(TOKEN)

        assert storage.read("drive_item:folder:0") == created[0]["id"]
        assert folder_id == drive.find_folder("conversations")["id"]


class TestFailures:
    """Transport failures and unauthorized tokens."""

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DriveClient(
            InMemoryStorage(),
            base_url="https://graph.test/v1.0",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(TransientError):
            await client.fetch(TOKEN, "index.json")

    @pytest.mark.asyncio
    async def test_unauthorized(self, drive_client, drive):
        drive.fail("GET", "/children", 401)

        with pytest.raises(UnauthorizedError):
            await drive_client.fetch(TOKEN, "index.json")


class TestDeleteAndCache:
    """Deletion and id cache maintenance."""

    @pytest.mark.asyncio
    async def test_delete_removes_file(self, drive_client, drive, storage):
        await drive_client.put(TOKEN, "conversation-a.json", b"{}")

        await drive_client.delete(TOKEN, "conversation-a.json")

        assert drive.find("conversation-a.json") is None
        assert storage.read("drive_item:file:conversation-a.json") is None

    @pytest.mark.asyncio
    async def test_delete_missing_is_ok(self, drive_client):
        await drive_client.delete(TOKEN, "conversation-none.json")

    @pytest.mark.asyncio
    async def test_delete_already_gone_is_ok(self, drive_client, drive):
        item_id = await drive_client.put(TOKEN, "conversation-a.json", b"{}")
        del drive.items[item_id]

        await drive_client.delete(TOKEN, "conversation-a.json")

    @pytest.mark.asyncio
    async def test_clear_cache(self, drive_client, storage):
        await drive_client.put(TOKEN, "index.json", b"{}")
        storage.write("conversation", "[]")

        drive_client.clear_cache()

        assert storage.keys() == ["conversation"]
