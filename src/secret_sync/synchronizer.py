# ABOUTME: Full-refresh pull of the watched secret files from the vault
# ABOUTME: Shared by webhook-triggered, peer-triggered, manual and periodic syncs

"""
Pull synchronization: refresh every watched file from the vault.

Every device stores its copy of a file as its own vault item
("<deviceId>-<file>"). A pull picks, per file, the most recently modified
copy among all known devices and writes it locally. Because each pull is a
full refresh with a deterministic winner, applying pulls in any order
converges to the same files.

The local device's own item winning means the local file is already the
latest content; it is left alone (it may be mid-push).
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secret_sync.models import (
    SecretReference,
    SyncResult,
    SyncStatus,
    SyncTrigger,
    utcnow,
)
from secret_sync.utils.storage import atomic_write_text
from secret_sync.utils.vault import AuthenticationError, SecretStoreError, VaultTimeout

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from pathlib import Path

    from secret_sync.utils.logging import SyncHistoryLog
    from secret_sync.utils.safety import WatchedFiles
    from secret_sync.utils.storage import DeviceRegistry, PulledContentLog, SyncStatusStore
    from secret_sync.utils.vault import SecretStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Pulled files hold credentials: owner read/write only
SECRET_FILE_MODE = 0o600


class SecretSynchronizer:
    """Pulls the latest content of every watched file from the vault."""

    def __init__(
        self,
        device_id: str,
        vault_name: str,
        store: SecretStore,
        registry: DeviceRegistry,
        status_store: SyncStatusStore,
        watched: WatchedFiles,
        history: SyncHistoryLog,
        timeout: float = 120.0,
        retry_attempts: int = 3,
        pulled: PulledContentLog | None = None,
    ) -> None:
        self._device_id = device_id
        self._vault_name = vault_name
        self._store = store
        self._registry = registry
        self._status_store = status_store
        self._watched = watched
        self._history = history
        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._pulled = pulled
        # One pull at a time per process; concurrent requests queue up
        self._lock = asyncio.Lock()

    @property
    def device_id(self) -> str:
        return self._device_id

    async def pull(self, trigger: SyncTrigger = SyncTrigger.MANUAL, source: str | None = None) -> SyncResult:
        """
        Run one full refresh and record its outcome.

        Never raises for vault failures, local file errors or timeouts: they
        come back as a failed SyncResult and a failed SyncStatus.

        Args:
            trigger: What caused the pull (recorded in status and history).
            source: Device that announced a change, considered as a candidate
                    even when it is not in the local registry.
        """
        log = logger.bind(trigger=trigger.value, source=source)
        started = time.monotonic()

        async with self._lock:
            try:
                synced, skipped = await asyncio.wait_for(self._refresh_all(source), timeout=self._timeout)
                result = SyncResult(trigger=trigger, success=True, synced_files=synced, skipped_files=skipped)
            except TimeoutError:
                result = SyncResult(trigger=trigger, success=False, error=f"Sync timed out after {self._timeout:g}s")
            except SecretStoreError as e:
                result = SyncResult(trigger=trigger, success=False, error=str(e))
            except OSError as e:
                result = SyncResult(trigger=trigger, success=False, error=f"Local file error: {e}")

        result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.success:
            log.info("pull_completed", synced=result.synced_files, skipped=result.skipped_files)
        else:
            log.error("pull_failed", error=result.error)

        await self._status_store.write(
            SyncStatus(
                device_id=self._device_id,
                last_sync_at=utcnow(),
                last_sync_outcome=result.outcome,
                last_error=result.error,
                trigger=trigger,
                synced_files=result.synced_files,
            )
        )
        self._history.log_result(result, message="pull completed" if result.success else "pull failed")
        return result

    async def _refresh_all(self, source: str | None) -> tuple[list[str], list[str]]:
        if not await self._store.is_authenticated():
            raise AuthenticationError("Vault CLI is not authenticated")

        candidates = self._candidate_devices(source)
        synced: list[str] = []
        skipped: list[str] = []
        for name in self._watched.names:
            if await self._refresh_file(name, candidates):
                synced.append(name)
            else:
                skipped.append(name)
        return synced, skipped

    def _candidate_devices(self, source: str | None) -> list[str]:
        ids = [self._device_id]
        for device in self._registry.list_devices():
            if device.id not in ids:
                ids.append(device.id)
        if source and source not in ids:
            ids.append(source)
        return ids

    async def _with_retry(self, operation: Callable[[SecretReference], Awaitable[T]], ref: SecretReference) -> T:
        """Retry a vault call on VaultTimeout only."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(VaultTimeout),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )
        return await retrying(operation, ref)

    async def _newest_copy(self, name: str, candidates: list[str]) -> tuple[str, SecretReference] | None:
        newest: tuple[datetime, str, SecretReference] | None = None
        for device_id in candidates:
            ref = SecretReference.for_device_file(self._vault_name, device_id, name)
            modified = await self._with_retry(self._store.last_modified, ref)
            if modified is None:
                continue
            if newest is None or modified > newest[0]:
                newest = (modified, device_id, ref)
        return (newest[1], newest[2]) if newest else None

    async def _refresh_file(self, name: str, candidates: list[str]) -> bool:
        """Refresh one file. True when the local file was (re)written."""
        path = self._watched.resolve(name)
        if path is None:
            return False

        winner = await self._newest_copy(name, candidates)
        if winner is None:
            logger.debug("pull_file_absent_in_vault", file=name)
            return False

        owner, ref = winner
        if owner == self._device_id and _has_content(path):
            logger.debug("pull_file_local_is_latest", file=name)
            return False

        value = await self._with_retry(self._store.resolve, ref)
        if _read_stripped(path) == value:
            self._remember(name, value)
            return False

        # The daemon must never see the new content without its fingerprint
        self._remember(name, value)
        atomic_write_text(path, value + "\n", mode=SECRET_FILE_MODE)
        logger.info("secret_file_refreshed", file=name, from_device=owner)
        return True

    def _remember(self, name: str, value: str) -> None:
        if self._pulled is not None:
            self._pulled.record(name, value)


def _has_content(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


def _read_stripped(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return None
