# ABOUTME: Structured logging with correlation IDs for the secret sync service
# ABOUTME: Implements the append-only sync history log and logging configuration

"""
Structured logging with correlation IDs and a sync history trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the observability plumbing shared by both processes:

1. STRUCTURED LOGGING: Every log line is an event name plus key/value pairs,
   rendered as JSON (production) or colored text (development).

2. CORRELATION IDs: One id per sync attempt (inbound request, file change,
   periodic tick), attached to every log line emitted while handling it.

3. SYNC HISTORY: An append-only JSON-lines file with one entry per sync
   attempt. It is WRITE-ONLY from the point of view of the sync logic: the
   current state lives in the status store, the history exists for audit.

=============================================================================
WHY CORRELATION IDs HERE?
=============================================================================

A single file save on one laptop fans out across processes:

    daemon:   {"correlation_id": "a1b2c3d4", "event": "file_change_detected"}
    daemon:   {"correlation_id": "a1b2c3d4", "event": "secret_pushed"}
    daemon:   {"correlation_id": "a1b2c3d4", "event": "peer_notified", "peer": "desktop"}

The receiver on each peer starts its own id per request, and the history log
records both, so "why did desktop rewrite .env.local at 10:30?" is one grep.

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

Both processes run a single asyncio loop with many overlapping tasks (HTTP
requests, debounced file events, the periodic timer). A ContextVar gives each
task its own correlation id without threading it through every call.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from secret_sync.models import SyncResult


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside any request (startup, the periodic timer before its
    first tick) still gets an id so its log lines are correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Pass "" to have the next get_correlation_id() call generate a fresh id;
    that is how each new sync attempt starts.
    """
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """Start a fresh correlation scope and return its id."""
    set_correlation_id("")
    return get_correlation_id()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Add correlation ID to log events.

    STRUCTLOG PROCESSOR: receives the event dict of every log call and
    returns it enriched with "correlation_id".
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging.

    Call ONCE at process startup (both CLI entry points do). Calling it again
    reconfigures, which the CLI uses after settings are loaded.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Values bound with bind_contextvars (e.g. device_id)
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: Per-attempt correlation id
    5. Renderer: JSON lines or colored console

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL".
        json_output: JSON lines when True (services under launchd/systemd),
                     colored text when False (interactive use).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# SYNC HISTORY LOG
# =============================================================================


class SyncHistoryLog:
    """
    Append-only history of sync attempts.

    WHAT WE RECORD:
    ---------------
    Every push and pull records:
    - timestamp: When the attempt finished (UTC ISO 8601)
    - correlation_id: Links the entry to the log lines of the attempt
    - device_id: The local device
    - type: What triggered it (manual, webhook, peer, scheduled, push, startup)
    - status: "success", "failure" or "skipped"
    - message: One-line summary
    - secrets_synced: File names written (pull) or stored (push)
    - duration_ms: Wall time of the attempt
    - error: Failure message, when status is "failure"

    EXAMPLE ENTRY:
    --------------
    {"timestamp": "2024-01-15T10:30:00+00:00", "correlation_id": "abc12345",
     "device_id": "laptop-20240115", "type": "peer", "status": "success",
     "message": "pull completed", "secrets_synced": [".env.local"],
     "duration_ms": 412}

    TWO OUTPUT MODES:
    -----------------
    1. FILE: Append JSON lines to log_path (created on first write)
    2. STDOUT: Emit through structlog when no path is configured

    Nothing in the sync logic ever reads this log back.
    """

    def __init__(self, device_id: str, log_path: Path | None = None) -> None:
        """
        Initialize the history log.

        Args:
            device_id: Local device id stamped on every entry.
            log_path: JSON-lines file, or None to log through structlog.
                      Entries are APPENDED, never truncated.
        """
        self._device_id = device_id
        self._log_path = log_path
        self._logger = structlog.get_logger("sync_history")

    def log(
        self,
        sync_type: str,
        status: str,
        message: str,
        secrets_synced: list[str] | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one entry."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "device_id": self._device_id,
            "type": sync_type,
            "status": status,
            "message": message,
            "secrets_synced": secrets_synced or [],
        }
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        if error:
            entry["error"] = error
        if details:
            entry["details"] = details

        if self._log_path:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info("sync_history", **{k: v for k, v in entry.items() if k != "timestamp"})

    # -------------------------------------------------------------------------
    # CONVENIENCE METHODS
    # -------------------------------------------------------------------------

    def log_result(self, result: SyncResult, message: str | None = None) -> None:
        """Record a finished pull or push."""
        self.log(
            sync_type=result.trigger.value,
            status=result.outcome.value,
            message=message or ("sync completed" if result.success else "sync failed"),
            secrets_synced=result.synced_files,
            duration_ms=result.duration_ms,
            error=result.error,
        )

    def log_skipped(self, sync_type: str, reason: str, file_name: str | None = None) -> None:
        """Record an attempt that was deliberately not performed."""
        self.log(
            sync_type=sync_type,
            status="skipped",
            message=reason,
            secrets_synced=[file_name] if file_name else None,
        )
