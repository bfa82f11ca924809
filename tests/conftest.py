"""Shared fixtures: an in-memory WebDAV server and local stores."""

from typing import Callable
from urllib.parse import quote, unquote

import httpx
import pytest

from ledgersync.store import LocalStore
from ledgersync.sync.webdav import WebDAVClient

DAV_BASE = "https://dav.example.com/dav"
DAV_ROOT = "/dav"


class FakeWebDAV:
    """Just enough of a WebDAV server to exercise ETag preconditions.

    Files live in ``files`` as ``name -> (content bytes, etag)``. Every
    successful PUT gets a fresh ETag.
    """

    def __init__(self):
        self.files: dict[str, tuple[bytes, str]] = {}
        self.requests: list[tuple[str, str]] = []
        self.puts: list[str] = []
        self.gets: list[str] = []
        # Called with the file name before a PUT is checked, to simulate a
        # concurrent writer
        self.before_put: Callable[[str], None] | None = None
        self.status_override: dict[str, int] = {}
        self._counter = 0

    def _next_etag(self) -> str:
        self._counter += 1
        return f'"v{self._counter}"'

    def write(self, name: str, text: str) -> str:
        """Write a file directly, as another client would."""
        etag = self._next_etag()
        self.files[name] = (text.encode("utf-8"), etag)
        return etag

    def read(self, name: str) -> str:
        return self.files[name][0].decode("utf-8")

    def _propfind(self, depth: str) -> httpx.Response:
        entries = [
            f"<d:response><d:href>{DAV_ROOT}/</d:href><d:propstat><d:prop>"
            "<d:resourcetype><d:collection/></d:resourcetype>"
            "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>"
        ]
        if depth != "0":
            for name, (_, etag) in sorted(self.files.items()):
                entries.append(
                    f"<d:response><d:href>{DAV_ROOT}/{quote(name)}</d:href>"
                    "<d:propstat><d:prop><d:resourcetype/>"
                    f"<d:getetag>{etag}</d:getetag>"
                    "<d:getlastmodified>Mon, 01 Jan 2024 00:00:00 GMT</d:getlastmodified>"
                    "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>"
                )
        body = (
            '<?xml version="1.0" encoding="utf-8"?>'
            '<d:multistatus xmlns:d="DAV:">' + "".join(entries) + "</d:multistatus>"
        )
        return httpx.Response(207, content=body.encode("utf-8"))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        name = path[len(DAV_ROOT):].strip("/")
        self.requests.append((request.method, name))

        if name in self.status_override:
            return httpx.Response(self.status_override[name])

        if request.method == "PROPFIND":
            return self._propfind(request.headers.get("Depth", "1"))

        if request.method == "GET":
            self.gets.append(name)
            if name not in self.files:
                return httpx.Response(404)
            content, etag = self.files[name]
            return httpx.Response(200, content=content, headers={"ETag": etag})

        if request.method == "PUT":
            if self.before_put is not None:
                hook, self.before_put = self.before_put, None
                hook(name)

            current = self.files.get(name)
            if_match = request.headers.get("If-Match")
            if if_match and (current is None or current[1] != if_match):
                return httpx.Response(412)
            if request.headers.get("If-None-Match") == "*" and current is not None:
                return httpx.Response(412)

            etag = self._next_etag()
            self.files[name] = (request.content, etag)
            self.puts.append(name)
            return httpx.Response(201 if current is None else 204, headers={"ETag": etag})

        if request.method == "DELETE":
            if self.files.pop(name, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)

        return httpx.Response(405)

    def client(self) -> WebDAVClient:
        """A WebDAV client wired to this server."""
        transport = httpx.MockTransport(self.handler)
        return WebDAVClient(
            DAV_BASE,
            "alice",
            "secret",
            max_retries=0,
            client=httpx.AsyncClient(transport=transport, base_url=DAV_BASE + "/"),
        )


@pytest.fixture
def dav():
    """Create an empty fake WebDAV server."""
    return FakeWebDAV()


@pytest.fixture
def store():
    """Create an in-memory local store."""
    s = LocalStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def other_store():
    """A second device's in-memory store."""
    s = LocalStore(":memory:")
    s.connect()
    yield s
    s.close()
