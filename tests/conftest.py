"""
Shared fixtures: in-memory local storage and a fake drive API.

The fake drive implements the subset of the drive REST API used by
``DriveClient`` and is served through ``httpx.MockTransport`` so tests
exercise the real client, remote and orchestrator code paths.
"""

import json
import re
from itertools import count

import httpx
import pytest

from chatsphere.conversation.models import Message, Part
from chatsphere.storage.local import InMemoryStorage
from chatsphere.storage.state import LocalConversationState
from chatsphere.sync.auth import StaticTokenProvider
from chatsphere.sync.metadata import MockMetadataGenerator
from chatsphere.sync.orchestrator import SyncOrchestrator
from chatsphere.sync.remote import ConversationRemote
from chatsphere.sync.store_client import DriveClient

BASE_URL = "https://graph.test/v1.0"

_ROUTES = [
    ("children", re.compile(r"^/me/drive/root/children$")),
    ("children", re.compile(r"^/me/drive/items/(?P<id>[^/:]+)/children$")),
    ("by_name", re.compile(r"^/me/drive/items/(?P<id>[^/:]+):/(?P<name>[^:]+):/content$")),
    ("content", re.compile(r"^/me/drive/items/(?P<id>[^/:]+)/content$")),
    ("item", re.compile(r"^/me/drive/items/(?P<id>[^/:]+)$")),
]


class FakeDrive:
    """In-memory drive with folders and named files."""

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.uploads: list[str] = []
        self._failures: list[tuple[str, str, int]] = []
        self._ids = count(1)

    # Test helpers

    def fail(self, method: str, match: str, status: int, times: int = 1) -> None:
        """Answer the next ``times`` matching requests with ``status``."""
        self._failures.extend([(method, match, status)] * times)

    def find(self, name: str) -> dict | None:
        for item in self.items.values():
            if item["name"] == name and not item["folder"]:
                return item
        return None

    def read_json(self, name: str):
        item = self.find(name)
        return json.loads(item["content"]) if item else None

    def write_json(self, name: str, value) -> None:
        folder = self.find_folder("conversations")
        item = self.find(name)
        content = json.dumps(value).encode()
        if item:
            item["content"] = content
        else:
            self._create(name, folder["id"] if folder else None, content=content)

    def find_folder(self, name: str) -> dict | None:
        for item in self.items.values():
            if item["name"] == name and item["folder"]:
                return item
        return None

    def upload_count(self, name: str) -> int:
        return self.uploads.count(name)

    # Request handling

    def _create(self, name, parent, folder=False, content=b"") -> dict:
        item_id = f"item{next(self._ids)}"
        item = {"id": item_id, "name": name, "parent": parent, "folder": folder, "content": content}
        self.items[item_id] = item
        return item

    def _describe(self, item: dict) -> dict:
        described = {"id": item["id"], "name": item["name"]}
        if item["folder"]:
            described["folder"] = {}
        else:
            described["size"] = len(item["content"])
        return described

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v1.0")

        for i, (method, match, status) in enumerate(self._failures):
            if method == request.method and match in path:
                del self._failures[i]
                return httpx.Response(status, json={"error": {"code": str(status)}})

        for kind, pattern in _ROUTES:
            m = pattern.match(path)
            if m:
                return getattr(self, f"_{kind}")(request, **m.groupdict())
        return httpx.Response(400, json={"error": {"code": "badRequest"}})

    def _children(self, request, id=None):
        if id is not None and id not in self.items:
            return httpx.Response(404)
        if request.method == "GET":
            wanted = None
            filter_expr = request.url.params.get("$filter")
            if filter_expr:
                wanted = re.match(r"name eq '(.*)'", filter_expr).group(1)
            children = [
                self._describe(item)
                for item in self.items.values()
                if item["parent"] == id and (wanted is None or item["name"] == wanted)
            ]
            return httpx.Response(200, json={"value": children})
        body = json.loads(request.content)
        for item in self.items.values():
            if item["parent"] == id and item["name"] == body["name"]:
                return httpx.Response(409, json={"error": {"code": "nameAlreadyExists"}})
        item = self._create(body["name"], id, folder=True)
        return httpx.Response(201, json=self._describe(item))

    def _by_name(self, request, id, name):
        if id not in self.items:
            return httpx.Response(404)
        self.uploads.append(name)
        for item in self.items.values():
            if item["parent"] == id and item["name"] == name:
                item["content"] = request.content
                return httpx.Response(200, json=self._describe(item))
        item = self._create(name, id, content=request.content)
        return httpx.Response(201, json=self._describe(item))

    def _content(self, request, id):
        item = self.items.get(id)
        if item is None:
            return httpx.Response(404)
        if request.method == "PUT":
            self.uploads.append(item["name"])
            item["content"] = request.content
            return httpx.Response(200, json=self._describe(item))
        return httpx.Response(200, content=item["content"])

    def _item(self, request, id):
        if request.method != "DELETE" or id not in self.items:
            return httpx.Response(404)
        del self.items[id]
        return httpx.Response(204)


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def drive_client(drive, storage):
    client = httpx.AsyncClient(transport=httpx.MockTransport(drive.handler))
    return DriveClient(storage, base_url=BASE_URL, client=client)


@pytest.fixture
def remote(drive_client):
    return ConversationRemote(drive_client)


@pytest.fixture
def state(storage):
    return LocalConversationState(storage)


@pytest.fixture
def metadata_generator():
    return MockMetadataGenerator()


@pytest.fixture
def orchestrator(state, remote, metadata_generator):
    return SyncOrchestrator(
        state,
        remote,
        StaticTokenProvider("test-token"),
        metadata_generator=metadata_generator,
    )


@pytest.fixture
def make_message():
    """Factory for a message with one text part stamped at ``timestamp``."""

    def factory(
        timestamp: int,
        text: str = "hello",
        role: str = "user",
        uuid: str | None = None,
        **fields,
    ) -> Message:
        part = Part(text=text, timestamp=timestamp, uuid=uuid or f"part-{timestamp}")
        return Message(role=role, parts=[part], timestamp=timestamp, **fields)

    return factory
