# ABOUTME: Durable local state for device routing and the latest sync outcome
# ABOUTME: JSON files written with atomic rename so readers never see partial writes

"""
Device registry, sync status and pulled-content persistence.

Both files are shared between the receiver and the daemon on the same machine.
Each write goes to a temporary file in the same directory and is renamed over
the original, so a concurrent reader sees either the old or the new document,
never a torn one. Between the two processes last-writer-wins is accepted.

None of the files ever contains a secret value; losing them degrades peer
notification, not secrets.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from secret_sync.models import Device, SyncStatus, utcnow

if TYPE_CHECKING:
    from pathlib import Path

logger = structlog.get_logger(__name__)


def atomic_write_text(path: Path, text: str, mode: int | None = None) -> None:
    """Write text to path via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        # rename never happened; drop the orphan
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


# =============================================================================
# DEVICE REGISTRY
# =============================================================================


class DeviceRegistry(Protocol):
    """Routing metadata for every known device."""

    def list_devices(self) -> list[Device]: ...

    def upsert_device(self, device: Device) -> Device: ...

    def touch_heartbeat(self, device_id: str) -> bool: ...


class FileDeviceRegistry:
    """DeviceRegistry stored as {"devices": [...]} in one JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> list[Device]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text() or "{}")
        except json.JSONDecodeError as e:
            # A corrupt registry only costs notifications; start over
            logger.warning("registry_unreadable", path=str(self._path), error=str(e))
            return []

        entries = data.get("devices", []) if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning("registry_unreadable", path=str(self._path), error="expected {\"devices\": [...]}")
            return []

        devices = []
        for entry in entries:
            try:
                devices.append(Device.from_dict(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("registry_entry_skipped", entry=entry, error=str(e))
        return devices

    def _save(self, devices: list[Device]) -> None:
        atomic_write_json(self._path, {"devices": [d.to_dict() for d in devices]})

    def list_devices(self) -> list[Device]:
        """All devices in registration order. Empty on first run."""
        return self._load()

    def get_device(self, device_id: str) -> Device | None:
        for device in self._load():
            if device.id == device_id:
                return device
        return None

    def upsert_device(self, device: Device) -> Device:
        """
        Insert or merge a device record.

        An existing id is merged in place (newer descriptive fields, fresh
        last_seen, registered_at untouched); a new id is appended with
        registered_at = last_seen = now. Returns the stored record.
        """
        now = utcnow()
        devices = self._load()
        for index, existing in enumerate(devices):
            if existing.id == device.id:
                stored = existing.merged_with(device, seen_at=now)
                devices[index] = stored
                self._save(devices)
                logger.info("device_updated", device_id=device.id)
                return stored

        device.registered_at = now
        device.last_seen = now
        devices.append(device)
        self._save(devices)
        logger.info("device_registered", device_id=device.id, sync_url=device.sync_endpoint)
        return device

    def touch_heartbeat(self, device_id: str) -> bool:
        """Refresh last_seen. Unknown ids are logged and ignored."""
        devices = self._load()
        for device in devices:
            if device.id == device_id:
                device.last_seen = utcnow()
                self._save(devices)
                return True
        logger.warning("heartbeat_unknown_device", device_id=device_id)
        return False


# =============================================================================
# SYNC STATUS
# =============================================================================


class SyncStatusStore(Protocol):
    """Single most-recent SyncStatus for the local device."""

    async def read(self) -> SyncStatus | None: ...

    async def write(self, status: SyncStatus) -> None: ...


class FileSyncStatusStore:
    """
    SyncStatusStore backed by one JSON file.

    Writes inside one process are serialized by an asyncio.Lock so that
    overlapping requests (a CI pull racing a peer push) cannot interleave.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def read(self) -> SyncStatus | None:
        if not self._path.exists():
            return None
        try:
            return SyncStatus.from_dict(json.loads(self._path.read_text()))
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("status_unreadable", path=str(self._path), error=str(e))
            return None

    async def write(self, status: SyncStatus) -> None:
        async with self._lock:
            atomic_write_json(self._path, status.to_dict())
        logger.debug(
            "status_written",
            outcome=status.last_sync_outcome.value,
            trigger=status.trigger.value if status.trigger else None,
        )


# =============================================================================
# PULLED CONTENT
# =============================================================================


def content_fingerprint(content: str | bytes) -> str:
    """sha256 of the content with surrounding whitespace removed."""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return hashlib.sha256(content.strip().encode()).hexdigest()


class PulledContentLog:
    """
    Fingerprint of the content a pull last wrote to each watched file.

    The receiver records what it writes; the daemon checks a changed file
    against it so that a pulled file is not pushed back as a local edit.
    Only hashes are stored, never the content.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text() or "{}")
        except json.JSONDecodeError as e:
            logger.warning("pulled_log_unreadable", path=str(self._path), error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("pulled_log_unreadable", path=str(self._path), error="expected an object")
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def record(self, name: str, content: str | bytes) -> None:
        fingerprints = self._load()
        fingerprints[name] = content_fingerprint(content)
        atomic_write_json(self._path, fingerprints)

    def matches(self, name: str, content: str | bytes) -> bool:
        """True when content is exactly what the last pull wrote to name."""
        return self._load().get(name) == content_fingerprint(content)

    def forget(self, name: str) -> None:
        """Drop the fingerprint once a local edit of name has been pushed."""
        fingerprints = self._load()
        if fingerprints.pop(name, None) is not None:
            atomic_write_json(self._path, fingerprints)
