"""HTTP client for the attachment endpoint of the structured backend."""

import logging
from urllib.parse import quote

import httpx

from ..errors import MalformedRemoteData
from ..http import RemoteClient

logger = logging.getLogger(__name__)


class AttachmentClient(RemoteClient):
    """Uploads, fetches and deletes binary attachments by content id.

    Uses the same bearer token as record sync.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        timeout: float = 60.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        super().__init__(
            endpoint,
            headers=headers,
            timeout=timeout,
            max_retries=max_retries,
            client=client,
        )

    async def upload(
        self,
        content_id: str,
        blob: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Upload a blob under a caller-chosen id.

        Returns:
            The id the remote accepted the blob under.
        """
        response = await self._request(
            "POST",
            "/upload/image",
            file=content_id,
            headers={"Content-Type": content_type, "X-Image-Key": content_id},
            content=blob,
        )
        try:
            key = response.json()["key"]
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedRemoteData(
                f"Upload response for {content_id} has no key", file=content_id
            ) from e
        if key != content_id:
            logger.warning(f"Remote stored {content_id} under a different key {key}")
        return key

    async def download(self, content_id: str) -> bytes:
        """Download a blob.

        Raises:
            RemoteRejected: If the blob does not exist (404).
        """
        response = await self._request("GET", f"/image/{quote(content_id)}", file=content_id)
        return response.content

    async def delete(self, content_id: str) -> None:
        """Delete a blob; a missing blob is not an error."""
        await self._request(
            "DELETE", f"/image/{quote(content_id)}", file=content_id, expected=(404,)
        )
