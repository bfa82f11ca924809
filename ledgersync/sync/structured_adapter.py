"""Structured sync adapter for a row-storing backend with a version counter."""

import logging
from typing import Any

import httpx

from ..errors import MalformedRemoteData
from ..http import RemoteClient
from ..models import CategoryGroup, SyncedRecord, record_from_dict
from ..store import LocalStore
from .base import PullResult, PushResult, SyncAdapter

logger = logging.getLogger(__name__)

# Payload key -> record kind
COLLECTIONS = {
    "ledgers": "ledger",
    "categories": "category",
    "groups": "group",
    "transactions": "transaction",
}
PAYLOAD_KEYS = {kind: key for key, kind in COLLECTIONS.items()}


class StructuredClient(RemoteClient):
    """HTTP client for the ``/sync`` endpoints of the structured backend."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        user_id: str = "default",
        timeout: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(
            endpoint,
            headers=headers,
            timeout=timeout,
            max_retries=max_retries,
            client=client,
        )
        self.user_id = user_id

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedRemoteData(f"Response is not JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedRemoteData("Response is not a JSON object")
        return payload

    async def pull(self, since: int) -> dict[str, Any]:
        response = await self._request(
            "GET", "/sync/pull", params={"user_id": self.user_id, "since": since}
        )
        return self._json(response)

    async def push(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", "/sync/push", params={"user_id": self.user_id}, json=payload
        )
        return self._json(response)

    async def version(self) -> int:
        response = await self._request(
            "GET", "/sync/version", params={"user_id": self.user_id}
        )
        return _as_version(self._json(response))

    async def health(self) -> bool:
        """Check that the backend is up; does not need a valid token."""
        response = await self._request("GET", "/health")
        return response.is_success


def _as_version(payload: dict[str, Any]) -> int:
    try:
        return int(payload["version"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedRemoteData(f"Missing or invalid version: {payload!r:.200}") from e


class StructuredSyncAdapter(SyncAdapter):
    """Sync adapter for the structured backend.

    The server applies each row with last-write-wins itself, so there is no
    client-side conflict retry here. Pulls are incremental from the stored
    cursor, except category groups which always come back in full.
    """

    name = "cloud"

    def __init__(self, store: LocalStore, client: StructuredClient):
        super().__init__(store)
        self.client = client
        self._pulled_version: int | None = None

    @property
    def account(self) -> str:
        return self.client.user_id

    async def pull(self, cursor: int | None = None) -> PullResult:
        """Fetch rows changed since the cursor.

        Args:
            cursor: Version to pull from; defaults to the stored cursor.

        Returns:
            PullResult whose ``version`` is the server counter at pull time.
        """
        since = self.store.get_cursor(self.account) if cursor is None else cursor
        payload = await self.client.pull(since)
        version = _as_version(payload)

        records: list[SyncedRecord] = []
        try:
            for key, kind in COLLECTIONS.items():
                records.extend(record_from_dict(kind, row) for row in payload.get(key) or [])
            if payload.get("settings"):
                records.append(record_from_dict("settings", payload["settings"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRemoteData(f"Bad pull payload: {e}") from e

        self._pulled_version = version
        logger.info(f"Pulled {len(records)} rows since {since} (server version {version})")
        return PullResult(records=records, version=version, files=len(records))

    async def push(self) -> PushResult:
        """Send dirty rows plus every category group, then advance the cursor.

        Nothing is sent when no row is dirty. The result carries the version
        stored as the cursor, which lags the server when another push
        landed in between.
        """
        dirty = self.store.dirty_records()
        pulled = self._pulled_version

        if not dirty:
            if pulled is not None:
                self.store.set_cursor(pulled, self.account)
            logger.debug("Nothing to push")
            return PushResult(version=pulled)

        payload: dict[str, Any] = {key: [] for key in COLLECTIONS}
        payload["settings"] = None
        for record in dirty:
            if record.kind == "settings":
                payload["settings"] = record.to_dict()
            elif record.kind != "group":
                payload[PAYLOAD_KEYS[record.kind]].append(record.to_dict())
        groups: list[CategoryGroup] = self.store.all("group")
        payload["groups"] = [g.to_dict() for g in groups]

        version = _as_version(await self.client.push(payload))
        self.store.mark_clean(dirty)

        # Our own push is the only change since the pull only when the counter
        # moved by exactly one; otherwise someone else's rows may sit between
        # the two versions and must still be pulled.
        cursor = version if pulled is not None and version == pulled + 1 else pulled
        if cursor is not None:
            self.store.set_cursor(cursor, self.account)

        logger.info(f"Pushed {len(dirty)} changed rows and {len(groups)} groups (version {version})")
        return PushResult(written=len(dirty) + len(groups), version=cursor)

    async def remote_version(self) -> int:
        return await self.client.version()

    async def close(self) -> None:
        await self.client.close()

