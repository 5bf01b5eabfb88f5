# ABOUTME: Domain records shared by the receiver and the device sync daemon
# ABOUTME: Devices, sync status, secret references, and sync results

"""
Domain records.

Records that are persisted (Device, SyncStatus) serialize to camelCase JSON so
the files stay readable by the shell helpers that predate this package:

    {"devices": [{"id": "laptop-20240115103000", "syncUrl": "http://...", ...}]}

None of these records ever hold a secret value. SecretReference only ADDRESSES
a value in the vault.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time (UTC)."""
    return datetime.now(UTC)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    # fromisoformat accepts "Z" from 3.11 on, which the shell helpers write
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncOutcome(StrEnum):
    """Outcome of one sync attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class SyncTrigger(StrEnum):
    """What started a sync attempt. Recorded in status and history."""

    STARTUP = "startup"
    MANUAL = "manual"
    WEBHOOK = "webhook"
    PEER = "peer"
    SCHEDULED = "scheduled"
    PUSH = "push"


@dataclass(frozen=True)
class SecretReference:
    """
    Address of one secret value in the vault: vault/item/field.

    For documents pushed by the daemon the item is "<deviceId>-<file>" and the
    field is the document's file name, so each device's copy of a file lives
    in its own item and two devices never overwrite each other.
    """

    vault: str
    item: str
    field: str

    @classmethod
    def for_device_file(cls, vault: str, device_id: str, file_name: str) -> SecretReference:
        return cls(vault=vault, item=f"{device_id}-{file_name}", field=file_name)

    def __str__(self) -> str:
        return f"{self.vault}/{self.item}/{self.field}"

    @property
    def uri(self) -> str:
        """Secret reference URI understood by the vault CLI."""
        return f"op://{self}"


@dataclass
class Device:
    """
    One machine participating in sync.

    The registry is authoritative only for ROUTING (who to notify). A device
    without sync_endpoint is pull-only and never receives push notifications.
    """

    id: str
    hostname: str = ""
    platform: str = ""
    architecture: str = ""
    sync_endpoint: str | None = None
    registered_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    added_manually: bool = False

    def merged_with(self, update: Device, seen_at: datetime) -> Device:
        """
        Merge a re-registration into this record.

        Descriptive fields take the newer value when it is non-empty; id and
        registered_at never change.
        """
        return replace(
            self,
            hostname=update.hostname or self.hostname,
            platform=update.platform or self.platform,
            architecture=update.architecture or self.architecture,
            sync_endpoint=update.sync_endpoint or self.sync_endpoint,
            added_manually=self.added_manually and update.added_manually,
            last_seen=seen_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "platform": self.platform,
            "arch": self.architecture,
            "syncUrl": self.sync_endpoint,
            "registeredAt": _format_time(self.registered_at),
            "lastSeen": _format_time(self.last_seen),
            "addedManually": self.added_manually,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Device:
        now = utcnow()
        return cls(
            id=str(data["id"]),
            hostname=data.get("hostname") or "",
            platform=data.get("platform") or "",
            architecture=data.get("arch") or "",
            sync_endpoint=data.get("syncUrl") or None,
            registered_at=_parse_time(data.get("registeredAt")) or now,
            last_seen=_parse_time(data.get("lastSeen")) or now,
            added_manually=bool(data.get("addedManually", False)),
        )


@dataclass
class SyncStatus:
    """Most recent sync attempt on the local device. Overwritten every attempt."""

    device_id: str
    last_sync_at: datetime
    last_sync_outcome: SyncOutcome
    last_error: str | None = None
    last_changed_file: str | None = None
    trigger: SyncTrigger | None = None
    synced_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "lastSyncAt": _format_time(self.last_sync_at),
            "lastSyncOutcome": self.last_sync_outcome.value,
            "lastError": self.last_error,
            "lastChangedFile": self.last_changed_file,
            "trigger": self.trigger.value if self.trigger else None,
            "syncedFiles": list(self.synced_files),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncStatus:
        trigger = data.get("trigger")
        return cls(
            device_id=str(data["deviceId"]),
            last_sync_at=_parse_time(data.get("lastSyncAt")) or utcnow(),
            last_sync_outcome=SyncOutcome(data.get("lastSyncOutcome", SyncOutcome.FAILURE)),
            last_error=data.get("lastError"),
            last_changed_file=data.get("lastChangedFile"),
            trigger=SyncTrigger(trigger) if trigger else None,
            synced_files=list(data.get("syncedFiles") or []),
        )


@dataclass
class SyncResult:
    """Result of a pull or push, returned to HTTP callers and the daemon."""

    trigger: SyncTrigger
    success: bool
    synced_files: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0

    @property
    def outcome(self) -> SyncOutcome:
        return SyncOutcome.SUCCESS if self.success else SyncOutcome.FAILURE

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "trigger": self.trigger.value,
            "syncedFiles": list(self.synced_files),
            "skippedFiles": list(self.skipped_files),
            "durationMs": self.duration_ms,
        }
        if self.error:
            body["error"] = self.error
        return body
