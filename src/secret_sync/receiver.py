# ABOUTME: Webhook receiver: HTTP entry point for CI-triggered and peer-triggered pulls
# ABOUTME: Verifies HMAC signatures, decodes events, runs the pull and reports status

"""Webhook receiver HTTP application."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from secret_sync.config import SyncSettings, load_settings, resolve_device_id
from secret_sync.events import (
    EVENT_HEADER,
    BuildEvent,
    InboundEvent,
    PeerNotification,
    PushEvent,
    decode_ci_event,
    decode_sync_request,
    trigger_for,
)
from secret_sync.models import SyncTrigger, utcnow
from secret_sync.synchronizer import SecretSynchronizer
from secret_sync.utils.logging import SyncHistoryLog, configure_logging, new_correlation_id
from secret_sync.utils.safety import (
    SignatureMismatch,
    WatchedFiles,
    signature_from_headers,
    verify_signature,
)
from secret_sync.utils.storage import FileDeviceRegistry, FileSyncStatusStore, PulledContentLog
from secret_sync.utils.vault import OnePasswordStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from secret_sync.utils.storage import SyncStatusStore

logger = structlog.get_logger(__name__)


class MalformedPayload(Exception):
    """Request body is not valid JSON."""


def _error(status_code: int, message: str, device_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "deviceId": device_id, "timestamp": utcnow().isoformat()},
    )


def _parse_json(body: bytes) -> Any:
    if not body.strip():
        return {}
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload(str(e)) from e


def create_app(
    device_id: str,
    synchronizer: SecretSynchronizer,
    status_store: SyncStatusStore,
    webhook_secret: str = "",
    ci_secret_files: Sequence[str] = (),
    sync_on_startup: bool = False,
) -> FastAPI:
    """
    Build the receiver application.

    All collaborators are injected so tests can drive the app with in-memory
    fakes and httpx.ASGITransport.

    Args:
        device_id: Local device id, echoed in every response.
        synchronizer: Runs the full-refresh pull.
        status_store: Source of GET /status.
        webhook_secret: Shared HMAC secret ("" = insecure mode, logged).
        ci_secret_files: File names whose appearance in a CI push triggers a pull.
        sync_on_startup: Pull once in the background after the server starts.
    """
    started_at = time.monotonic()

    async def startup_sync() -> None:
        new_correlation_id()
        await synchronizer.pull(trigger=SyncTrigger.STARTUP)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("receiver_started", device_id=device_id, signed=bool(webhook_secret))
        if not webhook_secret:
            logger.warning("webhook_secret_unset", detail="signature verification disabled")
        startup_pull: asyncio.Task[Any] | None = None
        if sync_on_startup:
            # Requests are served while the first pull runs
            startup_pull = asyncio.create_task(startup_sync(), name="startup-sync")
        yield
        if startup_pull is not None and not startup_pull.done():
            startup_pull.cancel()
            try:
                await startup_pull
            except asyncio.CancelledError:
                pass
        logger.info("receiver_stopped", device_id=device_id)

    app = FastAPI(title="secret-sync receiver", lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return _error(exc.status_code, message, device_id)

    @app.exception_handler(SignatureMismatch)
    async def signature_error(request: Request, exc: SignatureMismatch) -> JSONResponse:
        logger.warning("signature_rejected", path=request.url.path, reason=str(exc))
        return _error(401, "Invalid signature", device_id)

    @app.exception_handler(MalformedPayload)
    async def payload_error(request: Request, exc: MalformedPayload) -> JSONResponse:
        logger.warning("malformed_payload", path=request.url.path, error=str(exc))
        return _error(400, "Malformed JSON payload", device_id)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request_failed", path=request.url.path, error=str(exc))
        return _error(500, "Internal error", device_id)

    async def authenticated_body(request: Request) -> Any:
        new_correlation_id()
        body = await request.body()
        verify_signature(webhook_secret, body, signature_from_headers(request.headers))
        return _parse_json(body)

    async def run_pull(event: InboundEvent, source: str | None = None) -> JSONResponse:
        result = await synchronizer.pull(trigger=trigger_for(event), source=source)
        content = {
            "message": "Sync completed" if result.success else "Sync failed",
            "deviceId": device_id,
            "timestamp": utcnow().isoformat(),
            "result": result.to_dict(),
        }
        return JSONResponse(status_code=200 if result.success else 500, content=content)

    def no_action(reason: str, event_type: str | None = None) -> JSONResponse:
        logger.info("event_ignored", reason=reason, event_type=event_type)
        return JSONResponse(
            content={
                "message": reason,
                "deviceId": device_id,
                "timestamp": utcnow().isoformat(),
                "event": event_type,
            }
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "deviceId": device_id,
            "uptime": round(time.monotonic() - started_at, 3),
            "timestamp": utcnow().isoformat(),
        }

    @app.get("/status")
    async def status() -> JSONResponse:
        current = await status_store.read()
        if current is None:
            return _error(404, "No status available", device_id)
        return JSONResponse(content=current.to_dict())

    @app.post("/sync")
    async def sync(request: Request) -> JSONResponse:
        """Peer notification or manual/scheduled pull request."""
        event = decode_sync_request(await authenticated_body(request))
        if isinstance(event, PeerNotification):
            logger.info("peer_notification_received", source=event.source, changed_file=event.changed_file)
        else:
            logger.info("sync_requested", source=event.source, trigger=event.trigger.value)
        return await run_pull(event, source=event.source)

    @app.post("/webhook")
    async def webhook(request: Request) -> JSONResponse:
        """CI platform deliveries."""
        payload = await authenticated_body(request)
        event_type = request.headers.get(EVENT_HEADER)
        event = decode_ci_event(event_type, payload)
        match event:
            case BuildEvent() if event.requests_sync:
                logger.info(
                    "build_event_received",
                    event_type=event.event_type,
                    action=event.action,
                    workflow=event.workflow,
                    repository=event.repository,
                )
                return await run_pull(event)
            case BuildEvent():
                return no_action(f"Build action '{event.action}' needs no sync", event_type)
            case PushEvent():
                touched = event.touched_secret_files(ci_secret_files)
                if not touched:
                    return no_action("Push did not touch secret files", event_type)
                logger.info("push_event_received", ref=event.ref, files=touched)
                return await run_pull(event)
            case _:
                return no_action("Event acknowledged, no sync needed", event_type)

    return app


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_app(settings: SyncSettings) -> FastAPI:
    """Wire the production collaborators from settings."""
    device_id = resolve_device_id(settings)
    history = SyncHistoryLog(device_id, settings.history_path)
    status_store = FileSyncStatusStore(settings.status_path)
    synchronizer = SecretSynchronizer(
        device_id=device_id,
        vault_name=settings.vault.vault,
        store=OnePasswordStore(settings.vault),
        registry=FileDeviceRegistry(settings.registry_path),
        status_store=status_store,
        watched=WatchedFiles(settings.project_root, settings.watch_files),
        history=history,
        timeout=settings.sync_timeout,
        pulled=PulledContentLog(settings.pulled_path),
    )
    return create_app(
        device_id=device_id,
        synchronizer=synchronizer,
        status_store=status_store,
        webhook_secret=settings.signing_secret,
        ci_secret_files=settings.ci_secret_files,
        sync_on_startup=settings.sync_on_startup,
    )


def run_receiver(settings: SyncSettings) -> None:
    """Serve the receiver until interrupted."""
    app = build_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


def main() -> None:
    """Run the webhook receiver."""
    settings = load_settings()
    configure_logging(level=settings.log_level, json_output=settings.json_logs)

    try:
        run_receiver(settings)
    except KeyboardInterrupt:
        logger.info("receiver_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("receiver_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
