"""CLI entry point for ledgersync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .attachments import AttachmentClient, AttachmentQueue
from .config import Config, load_config
from .errors import SyncError
from .store import LocalStore
from .sync import (
    FileSyncAdapter,
    StructuredSyncAdapter,
    SyncOrchestrator,
    SyncStatus,
    create_adapter,
)

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data, ensure_ascii=False)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data, ensure_ascii=False)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _open_store(config: Config) -> LocalStore:
    store = LocalStore(config.store.db_path)
    store.connect()
    return store


def _open_queue(config: Config, store: LocalStore) -> AttachmentQueue | None:
    """Attachment queue, when enabled. Uploads need the structured backend."""
    if not config.attachments.enabled:
        return None

    client = None
    if config.cloud.endpoint:
        client = AttachmentClient(config.cloud.endpoint, config.cloud.token)
    queue = AttachmentQueue(
        config.attachments.db_path,
        client=client,
        cache_limit_bytes=config.attachments.cache_limit_bytes,
        log_store=store,
    )
    queue.connect()
    return queue


async def _close_queue(queue: AttachmentQueue | None) -> None:
    if queue is None:
        return
    if queue.client:
        await queue.client.close()
    queue.close()


def _build_orchestrator(
    config: Config, store: LocalStore, queue: AttachmentQueue | None
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        create_adapter(config, store),
        attachments=queue,
        debounce_seconds=config.sync.debounce_seconds,
        poll_interval_seconds=config.sync.poll_interval_seconds,
        max_conflict_retries=config.sync.max_conflict_retries,
        retry_delay_min=config.sync.retry_delay_min,
        retry_delay_max=config.sync.retry_delay_max,
        enabled=config.sync.enabled,
    )


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync pass."""
    config = load_config(args.config)
    store = _open_store(config)
    queue = _open_queue(config, store)

    try:
        orchestrator = _build_orchestrator(config, store, queue)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        store.close()
        return 1

    try:
        result = await orchestrator.request_sync()
        drained = await orchestrator.wait_for_attachments()
        if drained is not None:
            logger.debug(f"Attachments: {drained.uploaded} uploaded, {drained.remaining} pending")
        await orchestrator.stop()
    finally:
        await _close_queue(queue)
        store.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.status is SyncStatus.SUCCESS:
        print(
            f"Sync complete: pulled {result.pulled}, merged {result.merged}, "
            f"pushed {result.pushed} ({result.attempts} attempt(s))"
        )
    else:
        print(f"Sync {result.status.value}: {result.error or ''}".rstrip(": "))

    return 0 if result.status is SyncStatus.SUCCESS else 1


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local store state and remote reachability."""
    config = load_config(args.config)
    store = _open_store(config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "device": config.device.name,
        "backend": config.sync.backend,
        "sync_enabled": config.sync.enabled,
        "store": store.get_stats(),
    }

    remote = {"reachable": False, "error": None}
    try:
        adapter = create_adapter(config, store)
        try:
            if isinstance(adapter, FileSyncAdapter):
                remote["url"] = adapter.client.base_url
                remote["reachable"] = await adapter.client.check_connection()
            elif isinstance(adapter, StructuredSyncAdapter):
                remote["url"] = adapter.client.base_url
                remote["version"] = await adapter.remote_version()
                remote["cursor"] = store.get_cursor(adapter.account)
                remote["reachable"] = True
        finally:
            await adapter.close()
    except (SyncError, ValueError) as e:
        remote["error"] = str(e)
    status_data["remote"] = remote

    queue = _open_queue(config, store)
    if queue is not None:
        status_data["attachments"] = queue.get_stats()
        await _close_queue(queue)
    store.close()

    if args.json:
        print(json.dumps(status_data, indent=2, ensure_ascii=False))
        return 0

    stats = status_data["store"]
    print("ledgersync status")
    print("=================")
    print(f"Device: {status_data['device']}")
    print(f"Backend: {status_data['backend']} ({'enabled' if config.sync.enabled else 'disabled'})")
    print()
    print("Local store:")
    for kind, count in stats["records"].items():
        print(f"  {kind}: {count} ({stats['tombstones'][kind]} deleted)")
    print(f"  Pending changes: {stats['dirty']}")
    print()
    print(f"Remote ({remote.get('url', 'not configured')}):")
    if remote["reachable"]:
        print("  Status: Reachable")
        if "version" in remote:
            print(f"  Version: {remote['version']} (local cursor {remote['cursor']})")
    else:
        print("  Status: Not reachable")
        if remote["error"]:
            print(f"  Error: {remote['error']}")
    if "attachments" in status_data:
        att = status_data["attachments"]
        print()
        print("Attachments:")
        print(f"  Cached: {att['cached_entries']} ({att['cache_bytes']} bytes)")
        print(f"  Pending upload: {att['pending_uploads']}")

    return 0


def cmd_log(args: argparse.Namespace) -> int:
    """Print the sync log, newest first."""
    config = load_config(args.config)
    store = _open_store(config)
    try:
        entries = store.get_sync_log(limit=args.limit)
    finally:
        store.close()

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False))
        return 0

    if not entries:
        print("No sync history")
    for entry in entries:
        where = f" [{entry.file}]" if entry.file else ""
        print(
            f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.direction:<8} "
            f"{entry.outcome:<7} {entry.message}{where}"
        )
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Sync once, then keep polling the remote until interrupted."""
    config = load_config(args.config)
    store = _open_store(config)
    queue = _open_queue(config, store)

    try:
        orchestrator = _build_orchestrator(config, store, queue)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        store.close()
        return 1

    orchestrator.add_listener(
        lambda old, new: logger.info(f"Sync state: {old.value} -> {new.value}")
    )

    print(f"Watching {config.sync.backend} backend, polling every {config.sync.poll_interval_seconds}s")
    try:
        await orchestrator.request_sync()
        await orchestrator.start()
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await orchestrator.stop()
        await _close_queue(queue)
        store.close()

    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the reference backend."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    app = create_app(config.server)

    print("Starting ledgersync backend")
    print(f"URL: http://{config.server.host}:{config.server.port}")

    try:
        uvicorn_config = uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level="info" if getattr(args, "verbose", False) else "warning",
        )
        server = uvicorn.Server(uvicorn_config)
        await server.serve()
    finally:
        app.state.store.close()

    return 0


async def cmd_attachments_drain(args: argparse.Namespace) -> int:
    """Upload every pending attachment."""
    config = load_config(args.config)
    store = _open_store(config)
    queue = _open_queue(config, store)
    if queue is None:
        print("Attachments are disabled")
        store.close()
        return 1

    try:
        result = await queue.drain()
    finally:
        await _close_queue(queue)
        store.close()

    print(f"Uploaded {result.uploaded}, failed {result.failed}, {result.remaining} still pending")
    return 0 if result.failed == 0 else 1


def cmd_attachments_stats(args: argparse.Namespace) -> int:
    """Show attachment cache and queue statistics."""
    config = load_config(args.config)
    queue = AttachmentQueue(
        config.attachments.db_path, cache_limit_bytes=config.attachments.cache_limit_bytes
    )
    try:
        stats = queue.get_stats()
    finally:
        queue.close()

    print(json.dumps(stats, indent=2))
    return 0


def cmd_attachments_evict(args: argparse.Namespace) -> int:
    """Shrink the attachment cache to its budget, or clear it."""
    config = load_config(args.config)
    queue = AttachmentQueue(
        config.attachments.db_path, cache_limit_bytes=config.attachments.cache_limit_bytes
    )
    try:
        removed = queue.clear_cache() if args.all else queue.evict()
    finally:
        queue.close()

    print(f"Removed {removed} cached attachment(s)")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="ledgersync",
        description="Local-first ledger sync over WebDAV or a structured backend",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    sync_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show local and remote status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Log command
    log_parser = subparsers.add_parser("log", help="Show the sync log")
    log_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of entries to show (default: 20)",
    )
    log_parser.add_argument("--json", action="store_true", help="Output entries as JSON")
    log_parser.set_defaults(func=cmd_log)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Sync and keep polling the remote")
    watch_parser.set_defaults(func=cmd_watch)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the reference backend")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    # Attachment commands
    att_parser = subparsers.add_parser("attachments", help="Manage the attachment queue")
    att_subparsers = att_parser.add_subparsers(dest="attachments_command", help="Attachment commands")

    att_drain = att_subparsers.add_parser("drain", help="Upload pending attachments")
    att_drain.set_defaults(func=cmd_attachments_drain)

    att_stats = att_subparsers.add_parser("stats", help="Show cache statistics")
    att_stats.set_defaults(func=cmd_attachments_stats)

    att_evict = att_subparsers.add_parser("evict", help="Shrink the cache to its budget")
    att_evict.add_argument(
        "--all",
        action="store_true",
        help="Drop every cached attachment that is not pending upload",
    )
    att_evict.set_defaults(func=cmd_attachments_evict)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "attachments" and not args.attachments_command:
        att_parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            return 130
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
