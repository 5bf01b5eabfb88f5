# ABOUTME: Outbound HTTP to peer receivers and to the local receiver
# ABOUTME: Concurrent, bounded, best-effort peer fan-out plus the signed local pull trigger

"""
Outbound HTTP: peer notification fan-out and the local pull trigger.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two kinds of outbound calls leave a device:

1. PEER NOTIFICATIONS (PeerNotifier): after the daemon pushes a changed file
   into the vault, every other registered device with a receiver URL gets
   a POST so it can pull right away.

2. LOCAL PULL TRIGGER (ReceiverPullTrigger): when the daemon is configured
   to delegate its periodic pull, it POSTs to its own machine's receiver so
   the receiver stays the only writer of the secret files.

=============================================================================
DELIVERY SEMANTICS
=============================================================================

Peer notifications are AT-MOST-ONCE:

    - One attempt per peer per change. No retry queue.
    - All peers are called CONCURRENTLY (bounded by a semaphore), each with
      its own timeout, so one dead laptop never delays the others.
    - A failure is a NotificationResult with delivered=False, logged and
      returned. It is never raised.

A peer that misses a notification heals itself on its next periodic pull.
That's what lets the system stay eventually consistent without a reliable
message queue.

The local pull trigger is different: the receiver is on the same machine and
may simply be starting up, so connection errors are retried with tenacity
(3 attempts, exponential backoff).

=============================================================================
CONTEXT MANAGERS (async with)
=============================================================================

    async with PeerNotifier(timeout=10.0, secret=s) as notifier:
        results = await notifier.notify_all(peers, ".env.local")

The httpx.AsyncClient connection pool lives exactly as long as the block.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secret_sync.models import SyncResult, SyncTrigger, utcnow
from secret_sync.utils.safety import signed_headers

if TYPE_CHECKING:
    from collections.abc import Sequence

    from secret_sync.models import Device

logger = structlog.get_logger(__name__)


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class NotificationResult:
    """
    Outcome of notifying one peer.

    delivered is True only for a 2xx response. Anything else (non-2xx,
    timeout, refused connection, DNS failure) is a PeerUnreachable outcome
    described by status and/or error.
    """

    device_id: str
    delivered: bool
    status: int | None = None
    error: str | None = None


def notification_payload(source_id: str, peer: Device, changed_file: str) -> dict[str, Any]:
    """Body POSTed to a peer receiver's /sync endpoint."""
    return {
        "source": source_id,
        "deviceId": peer.id,
        "changedFile": changed_file,
        "timestamp": utcnow().isoformat(),
    }


def select_peers(devices: Sequence[Device], self_id: str) -> list[Device]:
    """Devices that can be notified: not self and with a receiver URL."""
    return [d for d in devices if d.id != self_id and d.sync_endpoint]


# =============================================================================
# PEER NOTIFIER
# =============================================================================


class PeerNotifier:
    """
    Best-effort concurrent notification of peer receivers.

    Outbound bodies are signed with the shared webhook secret when one is
    configured, because peer receivers verify every POST.
    """

    def __init__(
        self,
        source_id: str,
        secret: str = "",
        timeout: float = 10.0,
        max_concurrency: int = 10,
    ) -> None:
        """
        Args:
            source_id: Local device id, sent as "source".
            secret: Shared webhook secret ("" = unsigned).
            timeout: Per-peer request timeout in seconds.
            max_concurrency: Peers called at the same time.
        """
        self._source_id = source_id
        self._secret = secret
        self._timeout = timeout
        self._max_concurrency = max_concurrency
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> PeerNotifier:
        self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def notify(self, peer: Device, changed_file: str) -> NotificationResult:
        """
        Notify one peer. Never raises for network or HTTP failures.
        """
        if not self._client:
            raise RuntimeError("Notifier not initialized. Use 'async with' context manager.")
        if not peer.sync_endpoint:
            return NotificationResult(peer.id, delivered=False, error="no sync endpoint")

        body = json.dumps(notification_payload(self._source_id, peer, changed_file)).encode()
        log = logger.bind(peer=peer.id, url=peer.sync_endpoint)

        try:
            response = await self._client.post(
                peer.sync_endpoint,
                content=body,
                headers=signed_headers(self._secret, body),
            )
        except httpx.HTTPError as e:
            log.warning("peer_notification_failed", error=type(e).__name__, detail=str(e))
            return NotificationResult(peer.id, delivered=False, error=f"{type(e).__name__}: {e}")

        if response.is_success:
            log.info("peer_notified", status=response.status_code)
            return NotificationResult(peer.id, delivered=True, status=response.status_code)

        log.warning("peer_notification_rejected", status=response.status_code)
        return NotificationResult(peer.id, delivered=False, status=response.status_code)

    async def notify_all(self, peers: Sequence[Device], changed_file: str) -> list[NotificationResult]:
        """
        Notify every peer concurrently and collect one result per peer.

        Results are in the same order as peers. A failing peer has no effect
        on the calls to the others.
        """
        if not peers:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(peer: Device) -> NotificationResult:
            async with semaphore:
                return await self.notify(peer, changed_file)

        results = await asyncio.gather(*(bounded(peer) for peer in peers))

        delivered = sum(1 for r in results if r.delivered)
        logger.info(
            "peer_fanout_completed",
            changed_file=changed_file,
            peers=len(peers),
            delivered=delivered,
            failed=len(peers) - delivered,
        )
        return list(results)


# =============================================================================
# LOCAL PULL TRIGGER
# =============================================================================


class ReceiverPullTrigger:
    """
    Ask the local receiver to run a full pull.

    Callable with the same signature as SecretSynchronizer.pull, so the daemon
    treats "pull directly" and "pull via the receiver" the same way.
    """

    def __init__(self, receiver_url: str, device_id: str, secret: str = "", timeout: float = 120.0) -> None:
        self._url = f"{receiver_url.rstrip('/')}/sync"
        self._device_id = device_id
        self._secret = secret
        self._timeout = timeout

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, body: bytes) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, content=body, headers=signed_headers(self._secret, body))

    async def __call__(self, trigger: SyncTrigger = SyncTrigger.SCHEDULED, source: str | None = None) -> SyncResult:
        payload = {
            "source": source or self._device_id,
            "deviceId": self._device_id,
            "trigger": trigger.value,
        }
        body = json.dumps(payload).encode()
        started = utcnow()
        try:
            response = await self._post(body)
        except httpx.HTTPError as e:
            logger.warning("local_receiver_unreachable", url=self._url, error=str(e))
            return SyncResult(trigger=trigger, success=False, error=f"Local receiver unreachable: {e}")

        elapsed = int((utcnow() - started).total_seconds() * 1000)
        try:
            data = response.json().get("result", {})
        except ValueError:
            data = {}

        if response.is_success:
            return SyncResult(
                trigger=trigger,
                success=True,
                synced_files=list(data.get("syncedFiles", [])),
                skipped_files=list(data.get("skippedFiles", [])),
                duration_ms=elapsed,
            )
        return SyncResult(
            trigger=trigger,
            success=False,
            error=data.get("error") or f"Local receiver returned HTTP {response.status_code}",
            duration_ms=elapsed,
        )
