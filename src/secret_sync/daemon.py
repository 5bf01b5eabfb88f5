# ABOUTME: Device sync daemon: watches local secret files and pushes changes outward
# ABOUTME: Runs the periodic convergence pull and notifies peer receivers after each push

"""
Device sync daemon.

Lifecycle:

    start()       register self, fail fast without a vault session, start
                  watching the allow-listed files, run the first cycle,
                  schedule the periodic cycle
    (running)     file change -> debounce -> push to vault -> notify peers
                  every sync_interval -> pull from vault + heartbeat
    stop()        stop watching, let a running cycle and in-flight change
                  handlers finish (bounded by shutdown_timeout)

The daemon only READS the watched files. Writing them is the pull's job,
which is delegated to the local receiver when one is configured.
"""

from __future__ import annotations

import asyncio
import platform
import signal
import time
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from secret_sync.config import resolve_device_id
from secret_sync.models import (
    Device,
    SecretReference,
    SyncResult,
    SyncStatus,
    SyncTrigger,
    utcnow,
)
from secret_sync.synchronizer import SecretSynchronizer
from secret_sync.utils.logging import SyncHistoryLog, new_correlation_id
from secret_sync.utils.notifier import (
    NotificationResult,
    PeerNotifier,
    ReceiverPullTrigger,
    select_peers,
)
from secret_sync.utils.safety import WatchedFiles
from secret_sync.utils.storage import (
    FileDeviceRegistry,
    FileSyncStatusStore,
    PulledContentLog,
    content_fingerprint,
)
from secret_sync.utils.vault import AuthenticationError, OnePasswordStore, SecretStoreError

if TYPE_CHECKING:
    from secret_sync.config import SyncSettings
    from secret_sync.utils.storage import DeviceRegistry, SyncStatusStore
    from secret_sync.utils.vault import SecretStore

logger = structlog.get_logger(__name__)


class Puller(Protocol):
    """SecretSynchronizer.pull or ReceiverPullTrigger."""

    async def __call__(self, trigger: SyncTrigger = ..., source: str | None = ...) -> SyncResult: ...


class _WatchHandler(FileSystemEventHandler):
    """Forwards watchdog events for allow-listed files onto the asyncio loop."""

    def __init__(self, daemon: DeviceSyncDaemon, loop: asyncio.AbstractEventLoop) -> None:
        self._daemon = daemon
        self._loop = loop

    def _forward(self, path: str | bytes) -> None:
        if isinstance(path, bytes):
            path = path.decode()
        # watchdog calls us from its observer thread
        self._loop.call_soon_threadsafe(self._daemon.file_event, Path(path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors and atomic writers save via rename onto the target
        if not event.is_directory:
            self._forward(event.dest_path)


class DeviceSyncDaemon:
    """Pushes local secret changes to the vault and keeps the device converged."""

    def __init__(
        self,
        device: Device,
        vault_name: str,
        store: SecretStore,
        registry: DeviceRegistry,
        status_store: SyncStatusStore,
        watched: WatchedFiles,
        notifier: PeerNotifier,
        puller: Puller,
        history: SyncHistoryLog,
        sync_interval: float = 300.0,
        sync_timeout: float = 120.0,
        shutdown_timeout: float = 30.0,
        debounce_seconds: float = 1.0,
        pulled: PulledContentLog | None = None,
    ) -> None:
        self._device = device
        self._vault_name = vault_name
        self._store = store
        self._registry = registry
        self._status_store = status_store
        self._watched = watched
        self._notifier = notifier
        self._puller = puller
        self._history = history
        self._sync_interval = sync_interval
        self._sync_timeout = sync_timeout
        self._shutdown_timeout = shutdown_timeout
        self._debounce = debounce_seconds
        self._pulled = pulled

        self._observer: Observer | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._pending: dict[Path, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        # sha256 of the last content successfully pushed, per file
        self._pushed: dict[str, str] = {}

    @property
    def device_id(self) -> str:
        return self._device.id

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Register, verify the vault session and begin watching.

        Raises:
            AuthenticationError: The vault CLI is not signed in. The daemon is
                useless without it, so the caller should exit.
        """
        self._registry.upsert_device(self._device)

        if not await self._store.is_authenticated():
            raise AuthenticationError("Vault CLI is not authenticated")
        logger.info("vault_authentication_verified")

        self._start_watching()
        await self.run_cycle()
        self._timer_task = asyncio.create_task(self._periodic_loop(), name="periodic-sync")
        logger.info(
            "daemon_started",
            files=list(self._watched.names),
            interval=self._sync_interval,
        )

    async def stop(self) -> None:
        """Stop watching, then wait for the running cycle and in-flight pushes."""
        logger.info("daemon_stopping")
        self._stopping.set()

        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 5.0)
            self._observer = None

        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._timer_task is not None:
            # The loop exits on its own once _stopping is set; a cycle in
            # progress is only cancelled when it outlives shutdown_timeout
            _, pending = await asyncio.wait({self._timer_task}, timeout=self._shutdown_timeout)
            if pending:
                logger.warning("shutdown_cancelled_cycle", timeout=self._shutdown_timeout)
                self._timer_task.cancel()
                try:
                    await self._timer_task
                except asyncio.CancelledError:
                    pass
            self._timer_task = None

        if self._inflight:
            _, pending = await asyncio.wait(self._inflight, timeout=self._shutdown_timeout)
            if pending:
                logger.warning("shutdown_abandoned_work", tasks=len(pending))
        logger.info("daemon_stopped")

    async def run_forever(self) -> None:
        """start(), then block until SIGTERM/SIGINT, then stop()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._stopping.set)

        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    # -------------------------------------------------------------------------
    # FILE WATCHING
    # -------------------------------------------------------------------------

    def _start_watching(self) -> None:
        """Observe the watched files' directory (non-recursive)."""
        loop = asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(_WatchHandler(self, loop), str(self._watched.root), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("watching_files", root=str(self._watched.root), files=list(self._watched.names))

    def file_event(self, path: Path) -> None:
        """
        Debounce a raw filesystem event (runs on the event loop).

        Events for files outside the allow-list are ignored; repeated events
        for the same file within debounce_seconds collapse into one push.
        """
        target = self._watched.resolve(path)
        if target is None or self._stopping.is_set():
            return

        existing = self._pending.pop(target, None)
        if existing is not None:
            existing.cancel()

        loop = asyncio.get_running_loop()
        self._pending[target] = loop.call_later(self._debounce, self._spawn_change, target)

    def _spawn_change(self, path: Path) -> None:
        self._pending.pop(path, None)
        task = asyncio.create_task(self.handle_file_change(path))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # -------------------------------------------------------------------------
    # PUSH
    # -------------------------------------------------------------------------

    async def handle_file_change(self, path: Path) -> SyncResult | None:
        """
        Push one changed file to the vault and notify peers.

        Returns None when the change was deliberately ignored: the file is not
        watched, missing or empty, or holds content this device already pushed
        or that the last pull wrote.
        """
        new_correlation_id()
        target = self._watched.resolve(path)
        if target is None:
            return None

        name = target.name
        log = logger.bind(file=name)
        log.info("file_change_detected")

        try:
            content = target.read_bytes()
        except FileNotFoundError:
            log.warning("watched_file_missing")
            return None
        except OSError as e:
            log.warning("watched_file_unreadable", error=str(e))
            return None

        if not content:
            # Truncate-then-write in progress; the follow-up event pushes
            log.info("watched_file_empty_skipped")
            self._history.log_skipped(SyncTrigger.PUSH.value, "file is empty", name)
            return None

        fingerprint = content_fingerprint(content)
        if self._pushed.get(name) == fingerprint:
            log.debug("watched_file_unchanged_skipped")
            return None
        if self._pulled is not None and self._pulled.matches(name, content):
            # Written by a pull, not edited here
            log.debug("watched_file_pulled_skipped")
            self._pushed[name] = fingerprint
            return None

        started = time.monotonic()
        ref = SecretReference.for_device_file(self._vault_name, self.device_id, name)
        try:
            await asyncio.wait_for(self._push(ref, content), timeout=self._sync_timeout)
        except (SecretStoreError, TimeoutError) as e:
            error = str(e) or f"Push timed out after {self._sync_timeout:g}s"
            result = SyncResult(
                trigger=SyncTrigger.PUSH,
                success=False,
                error=error,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            log.error("secret_push_failed", error=error)
            await self._record(result, changed_file=name)
            return result

        self._pushed[name] = fingerprint
        if self._pulled is not None:
            self._pulled.forget(name)
        log.info("secret_pushed", item=ref.item)

        results = await self.notify_peers(name)
        result = SyncResult(
            trigger=SyncTrigger.PUSH,
            success=True,
            synced_files=[name],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self._record(result, changed_file=name, notified=results)
        return result

    async def _push(self, ref: SecretReference, content: bytes) -> None:
        if not await self._store.is_authenticated():
            raise AuthenticationError("Vault CLI is not authenticated")
        await self._store.store(ref, content)

    async def notify_peers(self, changed_file: str) -> list[NotificationResult]:
        """Fan out to every other device with a receiver URL."""
        peers = select_peers(self._registry.list_devices(), self.device_id)
        if not peers:
            logger.debug("no_peers_to_notify")
            return []
        return await self._notifier.notify_all(peers, changed_file)

    async def _record(
        self,
        result: SyncResult,
        changed_file: str,
        notified: list[NotificationResult] | None = None,
    ) -> None:
        await self._status_store.write(
            SyncStatus(
                device_id=self.device_id,
                last_sync_at=utcnow(),
                last_sync_outcome=result.outcome,
                last_error=result.error,
                last_changed_file=changed_file,
                trigger=SyncTrigger.PUSH,
                synced_files=result.synced_files,
            )
        )
        details = None
        if notified:
            details = {"notified": [r.device_id for r in notified if r.delivered],
                       "unreachable": [r.device_id for r in notified if not r.delivered]}
        self._history.log(
            sync_type=SyncTrigger.PUSH.value,
            status=result.outcome.value,
            message="push completed" if result.success else "push failed",
            secrets_synced=result.synced_files,
            duration_ms=result.duration_ms,
            error=result.error,
            details=details,
        )

    # -------------------------------------------------------------------------
    # PERIODIC CYCLE
    # -------------------------------------------------------------------------

    async def run_cycle(self) -> SyncResult:
        """
        One convergence cycle: full pull, then heartbeat.

        A cycle that hangs is abandoned after twice sync_timeout: the puller
        bounds its own run by sync_timeout, but may first wait out another
        pull holding its lock. The next tick tries again.
        """
        new_correlation_id()
        logger.info("periodic_sync_started")
        timeout = self._sync_timeout * 2
        try:
            result = await asyncio.wait_for(
                self._puller(trigger=SyncTrigger.SCHEDULED),
                timeout=timeout,
            )
        except TimeoutError:
            result = SyncResult(
                trigger=SyncTrigger.SCHEDULED,
                success=False,
                error=f"Periodic sync timed out after {timeout:g}s",
            )
            logger.error("periodic_sync_timeout", timeout=timeout)

        self._registry.touch_heartbeat(self.device_id)
        logger.info("periodic_sync_finished", success=result.success, error=result.error)
        return result

    async def _periodic_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._sync_interval)
                return
            except TimeoutError:
                pass
            try:
                await self.run_cycle()
            except Exception:
                # A broken cycle must not end the timer
                logger.exception("periodic_sync_crashed")


def describe_local_device(device_id: str, hostname: str, sync_url: str | None) -> Device:
    """Device record for this machine, as registered at daemon startup."""
    return Device(
        id=device_id,
        hostname=hostname,
        platform=platform.system().lower(),
        architecture=platform.machine(),
        sync_endpoint=sync_url,
    )


async def run_daemon(settings: SyncSettings) -> None:
    """
    Wire the production collaborators from settings and run until signalled.

    Raises:
        AuthenticationError: The vault session is missing at startup.
    """
    device_id = resolve_device_id(settings)
    history = SyncHistoryLog(device_id, settings.history_path)
    store = OnePasswordStore(settings.vault)
    registry = FileDeviceRegistry(settings.registry_path)
    status_store = FileSyncStatusStore(settings.status_path)
    watched = WatchedFiles(settings.project_root, settings.watch_files)
    pulled = PulledContentLog(settings.pulled_path)

    puller: Puller
    if settings.local_receiver_url:
        puller = ReceiverPullTrigger(
            settings.local_receiver_url,
            device_id,
            secret=settings.signing_secret,
            timeout=settings.sync_timeout,
        )
    else:
        puller = SecretSynchronizer(
            device_id=device_id,
            vault_name=settings.vault.vault,
            store=store,
            registry=registry,
            status_store=status_store,
            watched=watched,
            history=history,
            timeout=settings.sync_timeout,
            pulled=pulled,
        ).pull

    async with PeerNotifier(
        device_id,
        secret=settings.signing_secret,
        timeout=settings.notify_timeout,
        max_concurrency=settings.notify_concurrency,
    ) as notifier:
        daemon = DeviceSyncDaemon(
            device=describe_local_device(device_id, settings.hostname, settings.sync_url),
            vault_name=settings.vault.vault,
            store=store,
            registry=registry,
            status_store=status_store,
            watched=watched,
            notifier=notifier,
            puller=puller,
            history=history,
            sync_interval=settings.sync_interval,
            sync_timeout=settings.sync_timeout,
            shutdown_timeout=settings.shutdown_timeout,
            debounce_seconds=settings.debounce_seconds,
            pulled=pulled,
        )
        await daemon.run_forever()
