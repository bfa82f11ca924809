"""Shared HTTP plumbing for the remote clients.

Wraps ``httpx.AsyncClient`` with bounded retry on transient server statuses
and maps failures onto the sync error taxonomy.
"""

import asyncio
import logging
import random
from typing import Any

import httpx

from .errors import (
    AuthFailure,
    ConflictDetected,
    NetworkFailure,
    QuotaExceeded,
    RemoteRejected,
    SyncError,
)

logger = logging.getLogger(__name__)

# Statuses that mean "busy, try again shortly"
TRANSIENT_STATUSES = {429, 502, 503, 504}
QUOTA_STATUSES = {413, 507}


class RemoteClient:
    """Base class for clients talking to a remote over HTTP.

    Subclasses set up authentication headers; this class owns the
    ``httpx.AsyncClient`` lifecycle, retries and error mapping.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Root URL of the remote.
            headers: Headers sent with every request.
            timeout: Request timeout in seconds.
            max_retries: Retries after a transient status before giving up.
            backoff_seconds: Initial backoff, doubled on every retry.
            client: Optional pre-built AsyncClient (tests inject transports here).
        """
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url + "/",
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        file: str | None = None,
        expected: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request with exponential backoff on transient statuses.

        Connection errors and timeouts are raised as NetworkFailure right away;
        the caller's next natural trigger is the retry.

        Args:
            method: HTTP method.
            path: Path relative to ``base_url``.
            file: Remote file name, attached to raised errors.
            expected: Non-2xx statuses the caller handles itself.
            **kwargs: Passed to ``httpx.AsyncClient.request``.

        Returns:
            The response.

        Raises:
            SyncError: Mapped failure.
        """
        client = await self._get_client()
        headers = {**self.headers, **kwargs.pop("headers", {})}
        backoff = self.backoff_seconds

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.request(
                    method, path.lstrip("/"), headers=headers, **kwargs
                )
            except httpx.TimeoutException as e:
                raise NetworkFailure(
                    f"Request timed out after {self.timeout}s: {method} {path}", file=file
                ) from e
            except httpx.TransportError as e:
                raise NetworkFailure(f"Connection failed: {e}", file=file) from e

            if response.status_code in TRANSIENT_STATUSES and attempt < self.max_retries:
                delay = backoff + random.uniform(0, backoff / 2)
                logger.warning(
                    f"{method} {path} returned {response.status_code}, "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                backoff *= 2
                continue

            if response.is_success or response.status_code in expected:
                return response

            raise self._map_error(method, path, response, file)

        # unreachable: the final attempt either returns or raises
        raise NetworkFailure(f"Max retries ({self.max_retries}) exceeded", file=file)

    @staticmethod
    def _map_error(
        method: str, path: str, response: httpx.Response, file: str | None
    ) -> SyncError:
        """Translate an unsuccessful response into a sync error."""
        status = response.status_code
        detail = f"{method} {path} failed: HTTP {status}"

        if status in (401, 403):
            return AuthFailure(f"Authentication failed ({status})", file=file)
        if status == 412:
            return ConflictDetected(
                f"Remote changed since last read: {path}", file=file
            )
        if status in QUOTA_STATUSES:
            return QuotaExceeded(f"Remote storage limit reached ({status})", file=file)
        if status in TRANSIENT_STATUSES or status >= 500:
            return NetworkFailure(f"Server busy or failing: {detail}", file=file)
        return RemoteRejected(f"{detail}: {response.text[:200]}", status_code=status, file=file)
