"""File-backed sync adapter over WebDAV.

Full local state is serialized into a small set of named files:

- ``settings.json``: settings record plus every category and category group
- ``ledgers.json``: every ledger
- ``ledger_{scope}_{year}.csv``: one transaction shard per ledger and year

Tombstones are written to every file so deletions propagate.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import MalformedRemoteData
from ..models import Category, CategoryGroup, Ledger, Settings, SyncedRecord
from ..store import LocalStore, SyncLogEntry
from . import shard
from .base import PullResult, PushResult, SyncAdapter
from .webdav import RemoteDocument, RemoteFile, WebDAVClient

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
LEDGERS_FILE = "ledgers.json"

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
CSV_CONTENT_TYPE = "text/csv; charset=utf-8"


def dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def encode_ledgers(ledgers: list[Ledger]) -> str:
    ordered = sorted(ledgers, key=lambda l: (l.created_at, l.id))
    return dump_json([l.to_dict() for l in ordered])


def encode_settings(
    settings: Settings | None,
    categories: list[Category],
    groups: list[CategoryGroup],
) -> str:
    return dump_json(
        {
            "settings": settings.to_dict() if settings else None,
            "categories": [c.to_dict() for c in sorted(categories, key=lambda c: (c.order, c.id))],
            "categoryGroups": [g.to_dict() for g in sorted(groups, key=lambda g: (g.order, g.id))],
        }
    )


def decode_ledgers(text: str, filename: str = LEDGERS_FILE) -> list[Ledger]:
    try:
        payload = json.loads(text)
        if not isinstance(payload, list):
            raise ValueError("expected a JSON array")
        return [Ledger.from_dict(item) for item in payload]
    except (ValueError, KeyError, TypeError) as e:
        raise MalformedRemoteData(f"Bad {filename}: {e}", file=filename) from e


def decode_settings(text: str, filename: str = SETTINGS_FILE) -> list[SyncedRecord]:
    try:
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")

        records: list[SyncedRecord] = []
        raw = payload.get("settings")
        if isinstance(raw, dict):
            if "data" in raw or "updatedAt" in raw:
                records.append(Settings.from_dict(raw))
            else:
                # older clients stored the bare settings value
                records.append(Settings(data=raw))
        records.extend(Category.from_dict(c) for c in payload.get("categories") or [])
        records.extend(CategoryGroup.from_dict(g) for g in payload.get("categoryGroups") or [])
        return records
    except (ValueError, KeyError, TypeError) as e:
        raise MalformedRemoteData(f"Bad {filename}: {e}", file=filename) from e


def listing_fingerprint(files: list[RemoteFile]) -> str:
    """Stable digest of a directory listing; changes whenever any file does."""
    digest = hashlib.sha256()
    for f in sorted(files, key=lambda f: f.name):
        digest.update(f"{f.name}\0{f.etag or f.last_modified or ''}\n".encode("utf-8"))
    return digest.hexdigest()


@dataclass
class _Cycle:
    """What one pull learned about the remote, consumed by the following push."""

    listing: dict[str, RemoteFile] = field(default_factory=dict)
    documents: dict[str, RemoteDocument] = field(default_factory=dict)
    failed: set[str] = field(default_factory=set)


class FileSyncAdapter(SyncAdapter):
    """Sync adapter storing records as JSON and CSV files on WebDAV.

    Concurrency is optimistic: every write carries the ETag captured during
    the pull of the same cycle, so a file changed by another device in the
    meantime fails with ``ConflictDetected`` and the orchestrator reruns the
    whole cycle.
    """

    name = "webdav"

    def __init__(
        self,
        store: LocalStore,
        client: WebDAVClient,
        type_labels: dict[str, str] | None = None,
        currency: str = "¥",
    ):
        """Initialize the adapter.

        Args:
            store: Local record store.
            client: WebDAV client bound to the sync directory.
            type_labels: Labels for the readable Type column of shards.
            currency: Currency symbol for the readable Amount column.
        """
        super().__init__(store)
        self.client = client
        self.type_labels = type_labels
        self.currency = currency
        self._cycle = _Cycle()
        # Downloads kept across cycles, reused while the listed ETag is unchanged
        self._download_cache: dict[str, RemoteDocument] = {}

    # ==================== Pull ====================

    async def _download(self, remote: RemoteFile) -> RemoteDocument | None:
        cached = self._download_cache.get(remote.name)
        if cached and remote.etag and cached.etag == remote.etag:
            logger.debug(f"{remote.name} unchanged since last download")
            return cached

        document = await self.client.get_file(remote.name)
        if document is None:
            return None
        if document.etag is None:
            document.etag = remote.etag
        self._download_cache[remote.name] = document
        return document

    def _skip_file(self, name: str, error: MalformedRemoteData) -> None:
        logger.warning(f"Skipping {name}: {error}")
        self._cycle.failed.add(name)
        self.store.log_sync(SyncLogEntry("pull", "failure", str(error), file=name))

    async def pull(self) -> PullResult:
        """List the remote directory and download every known file.

        Shards are discovered from file names, so a device with no local
        ledgers still recovers every scope. A file that fails to parse is
        skipped and left unwritten for the rest of the cycle.
        """
        files = await self.client.list_files()
        self._cycle = _Cycle(listing={f.name: f for f in files})
        result = PullResult(version=listing_fingerprint(files))

        for name, decoder in ((LEDGERS_FILE, decode_ledgers), (SETTINGS_FILE, decode_settings)):
            remote = self._cycle.listing.get(name)
            if remote is None:
                continue
            document = await self._download(remote)
            if document is None:
                continue
            self._cycle.documents[name] = document
            result.files += 1
            try:
                result.records.extend(decoder(document.text, name))
            except MalformedRemoteData as e:
                self._skip_file(name, e)

        for name in sorted(self._cycle.listing):
            if shard.parse_shard_filename(name) is None:
                continue
            document = await self._download(self._cycle.listing[name])
            if document is None:
                continue
            self._cycle.documents[name] = document
            result.files += 1
            try:
                result.records.extend(shard.decode_shard(document.text, name))
            except MalformedRemoteData as e:
                self._skip_file(name, e)

        result.skipped = sorted(self._cycle.failed)
        logger.info(
            f"Pulled {len(result.records)} records from {result.files} files"
            + (f", skipped {len(result.skipped)}" if result.skipped else "")
        )
        return result

    # ==================== Push ====================

    def _render(self) -> dict[str, tuple[str, str]]:
        """Serialize full local state into ``name -> (text, content type)``."""
        ledgers = self.store.all("ledger")
        categories = self.store.all("category")
        groups = self.store.all("group")
        settings = self.store.get("settings", "settings")

        files = {
            LEDGERS_FILE: (encode_ledgers(ledgers), JSON_CONTENT_TYPE),
            SETTINGS_FILE: (encode_settings(settings, categories, groups), JSON_CONTENT_TYPE),
        }

        shards = shard.partition(self.store.all("transaction"))
        for (scope_id, year), transactions in shards.items():
            text = shard.encode_shard(
                transactions, categories, ledgers, self.type_labels, self.currency
            )
            files[shard.shard_filename(scope_id, year)] = (text, CSV_CONTENT_TYPE)

        # A year shard we read that no longer holds anything is emptied rather
        # than left behind, so a moved transaction never lives in two files.
        for name in self._cycle.documents:
            parsed = shard.parse_shard_filename(name)
            if parsed and parsed[1] is not None and name not in files:
                files[name] = (shard.encode_shard([]), CSV_CONTENT_TYPE)

        return files

    def _file_for(self, record: SyncedRecord) -> str:
        if record.kind == "ledger":
            return LEDGERS_FILE
        if record.kind == "transaction":
            return shard.shard_filename(*shard.shard_key(record))
        return SETTINGS_FILE

    async def push(self) -> PushResult:
        """Write every file whose content differs from what was pulled.

        Raises:
            ConflictDetected: If a file changed remotely since the pull.
        """
        dirty = self.store.dirty_records()
        result = PushResult()

        for name, (text, content_type) in sorted(self._render().items()):
            if name in self._cycle.failed:
                logger.warning(f"Not writing {name}: remote copy could not be parsed")
                continue

            previous = self._cycle.documents.get(name)
            if previous is not None and previous.text == text:
                result.skipped += 1
                continue

            listed = self._cycle.listing.get(name)
            etag = previous.etag if previous else (listed.etag if listed else None)
            new_etag = await self.client.put_file(
                name,
                text,
                etag=etag,
                create=previous is None and listed is None,
                content_type=content_type,
            )
            result.written += 1

            document = RemoteDocument(text=text, etag=new_etag)
            self._cycle.documents[name] = document
            self._cycle.listing[name] = RemoteFile(name=name, etag=new_etag)
            if new_etag:
                self._download_cache[name] = document
            else:
                self._download_cache.pop(name, None)

        pushed = [r for r in dirty if self._file_for(r) not in self._cycle.failed]
        self.store.mark_clean(pushed)

        listing = list(self._cycle.listing.values())
        if all(f.etag for f in listing):
            result.version = listing_fingerprint(listing)

        logger.info(f"Push complete: {result.written} written, {result.skipped} unchanged")
        return result

    async def remote_version(self) -> str:
        """Fingerprint of the remote listing."""
        return listing_fingerprint(await self.client.list_files())

    async def close(self) -> None:
        await self.client.close()
