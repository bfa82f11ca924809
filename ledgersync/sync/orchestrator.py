"""Sync orchestrator: runs pull, merge and push passes and decides when.

Triggers:
- ``notify_local_change()`` restarts a debounce timer
- ``request_sync()`` runs a pass right away
- a background poll compares the remote version and syncs only on change

At most one pass is in flight; triggers arriving meanwhile are coalesced.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..attachments import DrainResult
from ..errors import ConflictDetected, SyncError
from ..store import LocalStore, SyncLogEntry
from .base import SyncAdapter

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Where the orchestrator is in a pass."""

    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    PUSHING = "pushing"
    FAILED = "failed"


# Allowed transitions; anything else is a programming error
TRANSITIONS: dict[SyncState, set[SyncState]] = {
    SyncState.IDLE: {SyncState.PULLING},
    SyncState.PULLING: {SyncState.MERGING, SyncState.FAILED},
    SyncState.MERGING: {SyncState.PUSHING, SyncState.FAILED},
    SyncState.PUSHING: {SyncState.IDLE, SyncState.PULLING, SyncState.FAILED},
    SyncState.FAILED: {SyncState.PULLING},
}


class SyncStatus(Enum):
    """Outcome of a sync request."""

    SUCCESS = "success"
    FAILED = "failed"
    COALESCED = "coalesced"  # another pass was already running
    SKIPPED = "skipped"  # device offline


@dataclass
class SyncResult:
    """Result of a sync request."""

    status: SyncStatus
    pulled: int = 0
    merged: int = 0
    pushed: int = 0
    attempts: int = 0
    error: str | None = None
    error_kind: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "pulled": self.pulled,
            "merged": self.merged,
            "pushed": self.pushed,
            "attempts": self.attempts,
            "error": self.error,
            "error_kind": self.error_kind,
            "timestamp": self.timestamp.isoformat(),
        }


StatusListener = Callable[[SyncState, SyncState], None]


class SyncOrchestrator:
    """Runs sync passes against one adapter.

    A pass is ``pull -> merge -> push``. If the push hits an optimistic-lock
    conflict, the whole pass restarts from the pull after a random delay, up
    to ``max_conflict_retries`` times.
    """

    def __init__(
        self,
        store: LocalStore,
        adapter: SyncAdapter,
        attachments: Any | None = None,
        debounce_seconds: float = 5.0,
        poll_interval_seconds: float = 300.0,
        max_conflict_retries: int = 3,
        retry_delay_min: float = 0.5,
        retry_delay_max: float = 1.5,
        enabled: bool = True,
        online: bool = True,
    ):
        """Initialize the orchestrator.

        Args:
            store: Local record store; receives sync log entries.
            adapter: Remote adapter to run passes against.
            attachments: Optional attachment queue drained on every trigger.
            debounce_seconds: Quiet period after a local change before syncing.
            poll_interval_seconds: Interval of the remote version check.
            max_conflict_retries: Whole-pass retries after a conflict.
            retry_delay_min: Lower bound of the random delay between retries.
            retry_delay_max: Upper bound of the random delay between retries.
            enabled: Whether automatic triggers run passes.
            online: Initial connectivity.
        """
        self.store = store
        self.adapter = adapter
        self.attachments = attachments
        self.debounce_seconds = debounce_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_conflict_retries = max_conflict_retries
        self.retry_delay_min = retry_delay_min
        self.retry_delay_max = retry_delay_max
        self.enabled = enabled
        self.online = online

        self._state = SyncState.IDLE
        self._listeners: list[StatusListener] = []
        self._pass_lock = asyncio.Lock()
        self._debounce_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._drain_task: asyncio.Task | None = None
        self._running = False

        self._last_version: int | str | None = None
        self._last_result: SyncResult | None = None
        self._last_success: datetime | None = None

    # ==================== State ====================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._pass_lock.locked()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def add_listener(self, listener: StatusListener) -> None:
        """Register a callback receiving ``(old_state, new_state)``."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _transition(self, new_state: SyncState) -> None:
        """Move to ``new_state``; the only place the state changes."""
        old_state = self._state
        if new_state not in TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal sync transition {old_state.value} -> {new_state.value}")

        self._state = new_state
        logger.debug(f"Sync state {old_state.value} -> {new_state.value}")

        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}", exc_info=True)

    def _log(self, outcome: str, message: str, file: str | None = None) -> None:
        self.store.log_sync(SyncLogEntry("sync", outcome, message, file=file))

    # ==================== Passes ====================

    async def run_pass(self, trigger: str = "manual") -> SyncResult:
        """Run one full sync pass unless one is already running.

        Args:
            trigger: What caused the pass, for logging.

        Returns:
            SyncResult; ``COALESCED`` if a pass was already in flight.
        """
        if self._pass_lock.locked():
            logger.debug(f"Sync already in flight, coalescing {trigger} trigger")
            return SyncResult(status=SyncStatus.COALESCED)

        async with self._pass_lock:
            result = await self._run_attempts(trigger)

        self._last_result = result
        return result

    async def _run_attempts(self, trigger: str) -> SyncResult:
        attempts = 0
        while True:
            attempts += 1
            try:
                self._transition(SyncState.PULLING)
                pulled = await self.adapter.pull()

                self._transition(SyncState.MERGING)
                merged = await self.adapter.merge(pulled)

                self._transition(SyncState.PUSHING)
                pushed = await self.adapter.push()

            except ConflictDetected as e:
                if self._state is SyncState.PUSHING and attempts <= self.max_conflict_retries:
                    delay = random.uniform(self.retry_delay_min, self.retry_delay_max)
                    logger.warning(
                        f"Sync conflict on {e.file or 'remote'}, "
                        f"retry {attempts}/{self.max_conflict_retries} in {delay:.1f}s"
                    )
                    self._log("retry", f"Conflict detected, retrying ({attempts}): {e}", e.file)
                    await asyncio.sleep(delay)
                    continue
                return self._fail(
                    f"Remote data is changing too often, try again later ({e})", e, attempts
                )

            except SyncError as e:
                return self._fail(str(e), e, attempts)

            except Exception as e:
                logger.error(f"Unexpected sync error: {e}", exc_info=True)
                return self._fail(f"Unexpected error: {e}", e, attempts)

            self._transition(SyncState.IDLE)
            if pushed.version is not None:
                self._last_version = pushed.version
            elif pulled.version is not None and not pushed.written:
                self._last_version = pulled.version
            else:
                # our own writes moved the remote to an unknown version
                self._last_version = None
            self._last_success = datetime.now()

            message = (
                f"Sync complete ({trigger}): pulled {len(pulled.records)}, "
                f"merged {merged.changed}, pushed {pushed.written}"
            )
            if pulled.skipped:
                message += f", skipped {', '.join(pulled.skipped)}"
            logger.info(message)
            self._log("success", message)

            return SyncResult(
                status=SyncStatus.SUCCESS,
                pulled=len(pulled.records),
                merged=merged.changed,
                pushed=pushed.written,
                attempts=attempts,
            )

    def _fail(self, message: str, error: Exception, attempts: int) -> SyncResult:
        self._transition(SyncState.FAILED)
        logger.error(f"Sync failed: {message}")
        self._log("failure", message, getattr(error, "file", None))
        return SyncResult(
            status=SyncStatus.FAILED,
            attempts=attempts,
            error=message,
            error_kind=getattr(error, "kind", "error"),
        )

    # ==================== Triggers ====================

    def _can_auto_sync(self) -> bool:
        return self.enabled and self.online

    async def request_sync(self) -> SyncResult:
        """Manual trigger: sync now regardless of the enabled flag."""
        if not self.online:
            logger.info("Offline, manual sync skipped")
            return SyncResult(status=SyncStatus.SKIPPED)
        self._cancel_debounce()
        self._kick_attachments()
        return await self.run_pass("manual")

    def notify_local_change(self) -> None:
        """Restart the debounce timer after a local mutation.

        Must be called from the event loop thread.
        """
        if not self._can_auto_sync():
            return
        self._cancel_debounce()
        self._debounce_task = asyncio.create_task(self._debounced_pass())

    def set_online(self, online: bool) -> None:
        """Update connectivity; coming back online schedules a debounced pass."""
        was_online = self.online
        self.online = online
        if online and not was_online:
            logger.info("Back online, scheduling sync")
            self.notify_local_change()
        elif not online:
            self._cancel_debounce()

    def _cancel_debounce(self) -> None:
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _debounced_pass(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # past the quiet period; a later change starts a fresh timer instead of cancelling this pass
        self._debounce_task = None
        if not self._can_auto_sync():
            return
        self._kick_attachments()
        await self.run_pass("debounce")

    def _kick_attachments(self) -> None:
        """Start an attachment drain alongside the record sync."""
        if self.attachments is None:
            return
        if self._drain_task and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain_attachments())

    async def _drain_attachments(self) -> DrainResult | None:
        try:
            return await self.attachments.drain()
        except Exception as e:
            logger.error(f"Attachment drain failed: {e}", exc_info=True)
            return None

    async def wait_for_attachments(self) -> DrainResult | None:
        """Wait for the attachment drain started by the last trigger.

        Returns:
            The drain outcome, or None if no drain was started or it failed.
        """
        task = self._drain_task
        if task is None:
            return None
        return await task

    async def poll_once(self) -> SyncResult | None:
        """Check the remote version and sync only if something changed.

        Returns:
            The pass result, or None if nothing needed syncing.
        """
        if not self._can_auto_sync():
            return None
        self._kick_attachments()

        try:
            version = await self.adapter.remote_version()
        except SyncError as e:
            logger.warning(f"Version check failed: {e}")
            return None

        if version == self._last_version and not self.store.has_dirty():
            logger.debug(f"Remote version unchanged ({version})")
            return None

        return await self.run_pass("poll")

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the background version poll."""
        if self._running:
            logger.warning("SyncOrchestrator already running")
            return

        self._running = True
        self._stop_event.clear()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"SyncOrchestrator started with {self.adapter.name} backend, "
            f"polling every {self.poll_interval_seconds}s"
        )

    async def stop(self) -> None:
        """Stop background tasks and wait for an in-flight pass and drain to finish."""
        self._running = False
        self._stop_event.set()
        self._cancel_debounce()

        if self._poll_task:
            await self._poll_task
            self._poll_task = None

        # uploads in flight finish; the drain already stops on the first network failure
        await self.wait_for_attachments()
        self._drain_task = None

        # no mid-flight cancellation: let a running pass complete
        async with self._pass_lock:
            pass

        await self.adapter.close()
        logger.info("SyncOrchestrator stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Sync poll error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

    def get_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with state, last result and pending local changes.
        """
        return {
            "backend": self.adapter.name,
            "state": self._state.value,
            "enabled": self.enabled,
            "online": self.online,
            "in_flight": self.in_flight,
            "last_success": self._last_success.isoformat() if self._last_success else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "pending_changes": self.store.has_dirty(),
        }
