# ABOUTME: Decodes inbound webhook payloads into a closed set of event types
# ABOUTME: Classification happens once at the HTTP boundary, before any sync logic runs

"""
Inbound event decoding.

Raw JSON from the CI platform and from peers is turned into exactly one of:

    BuildEvent        CI build requested/re-requested (workflow_run, workflow_job, ...)
    PushEvent         CI push; carries the files touched by its commits
    PeerNotification  another device pushed a changed secret file
    ManualSyncEvent   operator (or the local daemon) asked for a pull
    UnknownEvent      anything else; acknowledged, never acted on

Downstream code matches on these types and never inspects raw payload shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from secret_sync.models import SyncTrigger

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

EVENT_HEADER = "X-GitHub-Event"

BUILD_EVENT_TYPES = frozenset({"workflow_run", "workflow_job", "check_suite", "check_run"})
BUILD_PULL_ACTIONS = frozenset({"requested", "rerequested"})


@dataclass(frozen=True)
class BuildEvent:
    action: str
    event_type: str
    workflow: str | None = None
    repository: str | None = None
    sender: str | None = None

    @property
    def requests_sync(self) -> bool:
        return self.action in BUILD_PULL_ACTIONS


@dataclass(frozen=True)
class PushEvent:
    ref: str | None
    repository: str | None
    changed_files: tuple[str, ...] = ()

    def touched_secret_files(self, secret_files: Iterable[str]) -> list[str]:
        """Changed paths that contain one of the secret file names."""
        names = list(secret_files)
        return [path for path in self.changed_files if any(name in path for name in names)]


@dataclass(frozen=True)
class PeerNotification:
    source: str
    device_id: str | None
    changed_file: str
    timestamp: str | None = None


@dataclass(frozen=True)
class ManualSyncEvent:
    source: str | None = None
    device_id: str | None = None
    trigger: SyncTrigger = SyncTrigger.MANUAL


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str | None
    details: dict[str, Any] = field(default_factory=dict)


InboundEvent = BuildEvent | PushEvent | PeerNotification | ManualSyncEvent | UnknownEvent


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _nested(payload: Mapping[str, Any], *keys: str) -> str | None:
    current: Any = payload
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return _str_or_none(current)


def decode_sync_request(payload: Any) -> PeerNotification | ManualSyncEvent:
    """
    Classify a POST /sync body.

    {"source", "deviceId", "changedFile", "timestamp"} from a peer daemon is a
    notification; anything else ({"source", "deviceId"} from an operator, or
    an empty body) is a manual sync request.
    """
    if not isinstance(payload, dict):
        return ManualSyncEvent()

    source = _str_or_none(payload.get("source"))
    device_id = _str_or_none(payload.get("deviceId"))
    changed_file = _str_or_none(payload.get("changedFile"))

    if source and changed_file:
        return PeerNotification(
            source=source,
            device_id=device_id,
            changed_file=changed_file,
            timestamp=_str_or_none(payload.get("timestamp")),
        )

    trigger = SyncTrigger.SCHEDULED if payload.get("trigger") == SyncTrigger.SCHEDULED.value else SyncTrigger.MANUAL
    return ManualSyncEvent(source=source, device_id=device_id, trigger=trigger)


def decode_ci_event(event_type: str | None, payload: Any) -> BuildEvent | PushEvent | UnknownEvent:
    """
    Classify a CI delivery by its event-type header.

    Only the fields used for routing and logging are extracted.
    """
    if not isinstance(payload, dict):
        return UnknownEvent(event_type=event_type)

    if event_type in BUILD_EVENT_TYPES:
        return BuildEvent(
            action=_str_or_none(payload.get("action")) or "",
            event_type=event_type,
            workflow=_nested(payload, "workflow", "name") or _nested(payload, "workflow_run", "name"),
            repository=_nested(payload, "repository", "full_name"),
            sender=_nested(payload, "sender", "login"),
        )

    if event_type == "push":
        changed: list[str] = []
        commits = payload.get("commits")
        for commit in commits if isinstance(commits, list) else []:
            if not isinstance(commit, dict):
                continue
            for key in ("added", "modified"):
                for path in commit.get(key) or []:
                    if isinstance(path, str) and path not in changed:
                        changed.append(path)
        return PushEvent(
            ref=_str_or_none(payload.get("ref")),
            repository=_nested(payload, "repository", "full_name"),
            changed_files=tuple(changed),
        )

    return UnknownEvent(event_type=event_type)


def trigger_for(event: InboundEvent) -> SyncTrigger:
    """History/status trigger recorded for a sync caused by event."""
    match event:
        case PeerNotification():
            return SyncTrigger.PEER
        case ManualSyncEvent(trigger=trigger):
            return trigger
        case _:
            return SyncTrigger.WEBHOOK
