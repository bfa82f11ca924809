"""Error taxonomy shared by the remote adapters, the orchestrator and the queue."""


class SyncError(Exception):
    """Base class for every failure surfaced by the sync engine."""

    kind = "error"

    def __init__(self, message: str, *, file: str | None = None):
        super().__init__(message)
        self.message = message
        self.file = file


class NetworkFailure(SyncError):
    """Remote unreachable or timed out. Retried on the next natural trigger."""

    kind = "network"


class AuthFailure(SyncError):
    """Credential missing or rejected. Keeps failing until reconfigured."""

    kind = "auth"


class ConflictDetected(SyncError):
    """A version-token precondition did not hold: the remote changed under us."""

    kind = "conflict"


class MalformedRemoteData(SyncError):
    """A remote file or payload could not be parsed."""

    kind = "malformed"


class QuotaExceeded(SyncError):
    """The remote refused the write for storage-limit reasons. Not retried."""

    kind = "quota"


class RemoteRejected(SyncError):
    """The remote answered with a client error that has no specific meaning."""

    kind = "rejected"

    def __init__(self, message: str, *, status_code: int | None = None, file: str | None = None):
        super().__init__(message, file=file)
        self.status_code = status_code
