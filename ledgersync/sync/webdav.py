"""Minimal async WebDAV client with ETag preconditions."""

import base64
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlsplit

import httpx

from ..errors import MalformedRemoteData
from ..http import RemoteClient

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
    <d:getetag/>
    <d:getlastmodified/>
  </d:prop>
</d:propfind>"""


@dataclass
class RemoteFile:
    """A file entry from a directory listing."""

    name: str
    etag: str | None = None
    last_modified: str | None = None


@dataclass
class RemoteDocument:
    """Downloaded file content with the version token it was read at."""

    text: str
    etag: str | None = None


def normalize_url(url: str) -> str:
    """Add a scheme when missing and drop trailing slashes."""
    url = url.strip()
    if url and not re.match(r"^https?://", url, re.IGNORECASE):
        url = "https://" + url
    return url.rstrip("/")


def basic_auth(username: str, password: str) -> str:
    """Basic authorization header value; credentials are UTF-8 encoded."""
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class WebDAVClient(RemoteClient):
    """WebDAV client for one remote directory.

    A write of an existing file carries ``If-Match`` with the token read
    earlier; a file created for the first time carries ``If-None-Match: *``.
    A precondition failure surfaces as ``ConflictDetected``.
    """

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        timeout: float = 20.0,
        max_retries: int = 5,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the WebDAV client.

        Args:
            url: Directory URL; ``https://`` is assumed when no scheme is given.
            username: Account name.
            password: Account password or app token.
            timeout: Request timeout in seconds.
            max_retries: Retries on transient statuses.
            client: Optional pre-built AsyncClient.
        """
        if not url.strip():
            raise ValueError("WebDAV url is not configured")
        super().__init__(
            normalize_url(url),
            headers={"Authorization": basic_auth(username, password)},
            timeout=timeout,
            max_retries=max_retries,
            client=client,
        )
        self._root_path = unquote(urlsplit(self.base_url).path).rstrip("/")

    async def check_connection(self) -> bool:
        """Check that the directory is reachable with the configured credentials.

        Raises:
            AuthFailure: If the credentials are rejected.
            NetworkFailure: If the server cannot be reached.
        """
        response = await self._request(
            "PROPFIND", "", headers={"Depth": "0"}, expected=(404, 405)
        )
        if response.status_code == 404:
            logger.warning(f"WebDAV directory not found: {self.base_url}")
            return False
        if response.status_code == 405:
            # Some servers disable PROPFIND on the root; a GET still proves auth
            await self._request("GET", "", expected=(403, 404, 405))
        return True

    async def list_files(self) -> list[RemoteFile]:
        """List the files directly inside the directory.

        Returns:
            Files with their ETags; subdirectories are skipped.

        Raises:
            MalformedRemoteData: If the listing is not valid XML.
        """
        response = await self._request(
            "PROPFIND",
            "",
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            content=PROPFIND_BODY.encode("utf-8"),
            expected=(404,),
        )
        if response.status_code == 404:
            return []

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise MalformedRemoteData(f"Unreadable PROPFIND response: {e}") from e

        files = []
        for entry in root.iter(f"{DAV_NS}response"):
            href = unquote(entry.findtext(f"{DAV_NS}href", default="")).rstrip("/")
            if not href or urlsplit(href).path.rstrip("/") == self._root_path:
                continue

            prop = entry.find(f"{DAV_NS}propstat/{DAV_NS}prop")
            if prop is None:
                continue
            resourcetype = prop.find(f"{DAV_NS}resourcetype")
            if resourcetype is not None and resourcetype.find(f"{DAV_NS}collection") is not None:
                continue

            name = href.rsplit("/", 1)[-1]
            if name:
                files.append(
                    RemoteFile(
                        name=name,
                        etag=prop.findtext(f"{DAV_NS}getetag") or None,
                        last_modified=prop.findtext(f"{DAV_NS}getlastmodified") or None,
                    )
                )

        logger.debug(f"Listed {len(files)} remote files")
        return files

    async def get_file(self, name: str) -> RemoteDocument | None:
        """Download a file.

        Returns:
            The document and its ETag, or None if it does not exist.
        """
        response = await self._request("GET", quote(name), file=name, expected=(404,))
        if response.status_code == 404:
            return None
        try:
            text = response.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRemoteData(f"{name} is not UTF-8 text", file=name) from e
        return RemoteDocument(text=text, etag=response.headers.get("ETag"))

    async def put_file(
        self,
        name: str,
        text: str,
        etag: str | None = None,
        create: bool = False,
        content_type: str = "text/plain; charset=utf-8",
    ) -> str | None:
        """Upload a file with an optimistic-concurrency precondition.

        Args:
            name: File name inside the directory.
            text: New content.
            etag: Token from the last read of this file.
            create: Require that the file does not exist yet.
            content_type: Content-Type header value.

        Returns:
            The new ETag if the server reports one.

        Raises:
            ConflictDetected: If the remote file changed since it was read.
        """
        headers = {"Content-Type": content_type}
        if etag:
            headers["If-Match"] = etag
        elif create:
            headers["If-None-Match"] = "*"

        response = await self._request(
            "PUT", quote(name), file=name, headers=headers, content=text.encode("utf-8")
        )
        logger.debug(f"Uploaded {name} ({response.status_code})")
        return response.headers.get("ETag")

    async def delete_file(self, name: str) -> None:
        """Delete a file; a missing file is not an error."""
        await self._request("DELETE", quote(name), file=name, expected=(404,))
