"""Base classes for remote sync adapters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..models import SyncedRecord
from ..store import LocalStore, MergeResult


@dataclass
class PullResult:
    """Records fetched from a remote in one pull."""

    records: list[SyncedRecord] = field(default_factory=list)
    version: int | str | None = None  # remote counter or listing fingerprint
    files: int = 0  # remote files or rows read
    skipped: list[str] = field(default_factory=list)  # files that failed to parse


@dataclass
class PushResult:
    """Outcome of one push."""

    written: int = 0  # files or rows sent
    skipped: int = 0  # files left untouched because nothing changed
    version: int | str | None = None


class SyncAdapter(ABC):
    """A remote backend the orchestrator can run pull, merge and push against.

    Adapters may keep per-cycle state between ``pull`` and ``push``; the
    orchestrator always calls them in that order within one pass.
    """

    name = "adapter"

    def __init__(self, store: LocalStore):
        self.store = store

    @abstractmethod
    async def pull(self) -> PullResult:
        """Fetch remote records.

        Returns:
            PullResult with the records to merge.
        """
        pass

    async def merge(self, pulled: PullResult) -> MergeResult:
        """Merge pulled records into the local store with last-write-wins."""
        return self.store.merge_remote(pulled.records)

    @abstractmethod
    async def push(self) -> PushResult:
        """Send local state to the remote.

        Raises:
            ConflictDetected: If the remote changed since the pull.
        """
        pass

    @abstractmethod
    async def remote_version(self) -> int | str | None:
        """Cheap check of the remote state, used by the version poll."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
