"""HTTP client for the remote drive that stores conversation documents.

Documents live as named files inside a fixed folder hierarchy
(``.chatsphere/conversations`` by default). The drive addresses items by
opaque ids, so each logical name is resolved to an id once and the id is
cached in local storage. A cached id that turns out to be stale (404) is
dropped and the name is searched again. An upload that hits a write
conflict (409) is retried once before ``ConflictError`` is raised.
"""

import logging

import httpx

from chatsphere.storage.local import KeyValueStorage
from chatsphere.sync.exceptions import (
    ConflictError,
    NotFoundError,
    RemoteStoreError,
    TransientError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
DEFAULT_FOLDERS = (".chatsphere", "conversations")
CACHE_PREFIX = "drive_item:"


def raise_for_status(response: httpx.Response, context: str) -> None:
    """Translate an error response into a typed ``RemoteStoreError``."""
    if response.is_success:
        return
    status = response.status_code
    message = f"{context} failed: {status} {response.reason_phrase}"
    if status in (401, 403):
        raise UnauthorizedError(message, status)
    if status == 404:
        raise NotFoundError(message, status)
    if status in (409, 412):
        raise ConflictError(message, status)
    if status == 429 or status >= 500:
        raise TransientError(message, status)
    raise RemoteStoreError(message, status)


class DriveClient:
    """Client for named files in the drive's conversations folder."""

    def __init__(
        self,
        storage: KeyValueStorage,
        base_url: str = GRAPH_API_BASE,
        folders: tuple[str, ...] = DEFAULT_FOLDERS,
        timeout: float = 30,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize client.

        Args:
            storage: Local storage used to cache resolved item ids
            base_url: Drive API base URL
            folders: Folder path, outermost first, holding the documents
            timeout: Request timeout in seconds
            client: Preconfigured httpx client (tests pass a mock transport)
        """
        self.storage = storage
        self.base_url = base_url.rstrip("/")
        self.folders = folders
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    # Id cache

    def _cache_key(self, kind: str, name: str) -> str:
        return f"{CACHE_PREFIX}{kind}:{name}"

    def _cached(self, kind: str, name: str) -> str | None:
        return self.storage.read(self._cache_key(kind, name))

    def _remember(self, kind: str, name: str, item_id: str | None) -> None:
        key = self._cache_key(kind, name)
        if item_id:
            self.storage.write(key, item_id)
        else:
            self.storage.delete(key)

    def clear_cache(self) -> None:
        """Forget every cached folder and file id."""
        removed = self.storage.delete_prefix(CACHE_PREFIX)
        logger.debug(f"Cleared {removed} cached drive item ids")

    def _forget_folders(self) -> None:
        for depth in range(len(self.folders)):
            self._remember("folder", str(depth), None)

    # HTTP

    async def _request(
        self,
        method: str,
        url: str,
        token: str,
        context: str,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        headers = {**(headers or {}), "Authorization": f"Bearer {token}"}
        try:
            response = await self.client.request(
                method, f"{self.base_url}{url}", headers=headers, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"{context} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{context} failed: {e}") from e
        raise_for_status(response, context)
        return response

    def _children_url(self, parent_id: str | None) -> str:
        if parent_id is None:
            return "/me/drive/root/children"
        return f"/me/drive/items/{parent_id}/children"

    async def _find_child(
        self, token: str, parent_id: str | None, name: str, folder: bool = False
    ) -> str | None:
        response = await self._request(
            "GET",
            self._children_url(parent_id),
            token,
            f"Search for {name}",
            params={"$filter": f"name eq '{name}'"},
        )
        for item in response.json().get("value", []):
            if item.get("name") != name:
                continue
            if folder and "folder" not in item:
                continue
            return item["id"]
        return None

    async def _ensure_folder(self, token: str, parent_id: str | None, name: str) -> str:
        existing = await self._find_child(token, parent_id, name, folder=True)
        if existing:
            return existing
        try:
            response = await self._request(
                "POST",
                self._children_url(parent_id),
                token,
                f"Create folder {name}",
                json={
                    "name": name,
                    "folder": {},
                    "@microsoft.graph.conflictBehavior": "fail",
                },
            )
        except ConflictError:
            # Created concurrently by another device.
            existing = await self._find_child(token, parent_id, name, folder=True)
            if existing:
                return existing
            raise
        logger.info(f"Created remote folder {name}")
        return response.json()["id"]

    async def folder_id(self, token: str) -> str:
        """Resolve the documents folder, creating missing folders."""
        parent_id = None
        for depth, name in enumerate(self.folders):
            cached = self._cached("folder", str(depth))
            if cached:
                parent_id = cached
                continue
            parent_id = await self._ensure_folder(token, parent_id, name)
            self._remember("folder", str(depth), parent_id)
        return parent_id

    async def resolve(self, token: str, name: str) -> str | None:
        """Id of the named file, or None if it does not exist."""
        cached = self._cached("file", name)
        if cached:
            return cached
        folder_id = await self.folder_id(token)
        try:
            item_id = await self._find_child(token, folder_id, name)
        except NotFoundError:
            logger.warning(f"Cached folder id is stale while resolving {name}")
            self._forget_folders()
            folder_id = await self.folder_id(token)
            item_id = await self._find_child(token, folder_id, name)
        self._remember("file", name, item_id)
        return item_id

    # Blob operations

    async def fetch(self, token: str, name: str) -> bytes:
        """Download a named file.

        Args:
            token: Bearer token
            name: File name inside the documents folder

        Returns:
            File content

        Raises:
            NotFoundError: File does not exist
            RemoteStoreError: Any other failure
        """
        cached = self._cached("file", name)
        if cached:
            try:
                response = await self._request(
                    "GET", f"/me/drive/items/{cached}/content", token, f"Fetch {name}"
                )
                return response.content
            except NotFoundError:
                logger.warning(f"Cached id for {name} is stale, searching again")
                self._remember("file", name, None)

        item_id = await self.resolve(token, name)
        if item_id is None:
            raise NotFoundError(f"{name} does not exist", 404)
        response = await self._request(
            "GET", f"/me/drive/items/{item_id}/content", token, f"Fetch {name}"
        )
        return response.content

    async def _put_with_retry(self, url: str, token: str, name: str, content: bytes):
        headers = {"Content-Type": "application/json"}
        try:
            return await self._request(
                "PUT", url, token, f"Upload {name}", content=content, headers=headers
            )
        except ConflictError:
            logger.warning(f"Upload conflict on {name}, retrying once")
            return await self._request(
                "PUT", url, token, f"Upload {name}", content=content, headers=headers
            )

    async def put(self, token: str, name: str, content: bytes) -> str:
        """Create or replace a named file.

        Returns:
            Drive item id of the file

        Raises:
            ConflictError: Conflict persisted after one retry
            RemoteStoreError: Any other failure
        """
        cached = self._cached("file", name)
        if cached:
            try:
                await self._put_with_retry(
                    f"/me/drive/items/{cached}/content", token, name, content
                )
                logger.info(f"Updated {name} ({len(content)} bytes)")
                return cached
            except NotFoundError:
                logger.warning(f"Cached id for {name} is stale, recreating")
                self._remember("file", name, None)

        folder_id = await self.folder_id(token)
        try:
            response = await self._put_with_retry(
                f"/me/drive/items/{folder_id}:/{name}:/content", token, name, content
            )
        except NotFoundError:
            logger.warning(f"Cached folder id is stale while uploading {name}")
            self._forget_folders()
            folder_id = await self.folder_id(token)
            response = await self._put_with_retry(
                f"/me/drive/items/{folder_id}:/{name}:/content", token, name, content
            )
        item_id = response.json().get("id")
        self._remember("file", name, item_id)
        logger.info(f"Created {name} ({len(content)} bytes)")
        return item_id

    async def delete(self, token: str, name: str) -> None:
        """Delete a named file. A file that is already gone is not an error."""
        item_id = await self.resolve(token, name)
        if item_id is None:
            logger.debug(f"{name} already absent remotely")
            return
        try:
            await self._request("DELETE", f"/me/drive/items/{item_id}", token, f"Delete {name}")
            logger.info(f"Deleted {name}")
        except NotFoundError:
            logger.debug(f"{name} was already deleted")
        self._remember("file", name, None)
