# ABOUTME: Unit tests for the webhook receiver HTTP application
# ABOUTME: Drives the FastAPI app in-process through httpx.ASGITransport

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from secret_sync.events import EVENT_HEADER
from secret_sync.models import SecretReference, SyncOutcome, SyncTrigger
from secret_sync.receiver import create_app
from secret_sync.synchronizer import SecretSynchronizer
from secret_sync.utils.safety import GITHUB_SIGNATURE_HEADER, SIGNATURE_HEADER, compute_signature
from secret_sync.utils.storage import FileSyncStatusStore

SECRET = "test-secret"


def _signed(payload: dict, secret: str = SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode()
    return body, {SIGNATURE_HEADER: compute_signature(secret, body), "Content-Type": "application/json"}


@pytest.fixture
def app(synchronizer: SecretSynchronizer, status_store: FileSyncStatusStore):
    """Create the receiver app with the shared test collaborators."""
    return create_app(
        device_id="laptop-1",
        synchronizer=synchronizer,
        status_store=status_store,
        webhook_secret=SECRET,
        ci_secret_files=[".env.local", "secrets.json"],
    )


@pytest.fixture
async def client(app):
    """In-process HTTP client for the receiver."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://receiver") as c:
        yield c


@pytest.mark.unit
class TestReadOnlyEndpoints:
    """Tests for /health and /status."""

    async def test_health_before_any_sync(self, client: httpx.AsyncClient):
        """Test that health needs no prior sync."""
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["deviceId"] == "laptop-1"
        assert body["uptime"] >= 0
        assert "timestamp" in body

    async def test_status_before_any_sync(self, client: httpx.AsyncClient):
        """Test that /status is 404 until something has synced."""
        response = await client.get("/status")

        assert response.status_code == 404
        assert response.json()["deviceId"] == "laptop-1"

    async def test_unknown_route(self, client: httpx.AsyncClient):
        """Test that unknown routes return structured JSON."""
        response = await client.get("/nope")

        assert response.status_code == 404
        assert response.json()["deviceId"] == "laptop-1"

    async def test_wrong_method(self, client: httpx.AsyncClient):
        """Test that GET on a POST-only route is 405 JSON."""
        response = await client.get("/sync")

        assert response.status_code == 405
        assert response.json()["deviceId"] == "laptop-1"


@pytest.mark.unit
class TestSyncEndpoint:
    """Tests for POST /sync."""

    async def test_peer_notification_pulls(self, client: httpx.AsyncClient, vault, project_root: Path):
        """Test that a signed peer notification refreshes local files."""
        vault.put(SecretReference.for_device_file("Development", "laptop-2", ".env.local"), "API_KEY=peer")
        body, headers = _signed(
            {"source": "laptop-2", "deviceId": "laptop-1", "changedFile": ".env.local", "timestamp": "t"}
        )

        response = await client.post("/sync", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["deviceId"] == "laptop-1"
        assert data["result"]["trigger"] == "peer"
        assert data["result"]["syncedFiles"] == [".env.local"]
        assert (project_root / ".env.local").read_text() == "API_KEY=peer\n"

    async def test_status_after_sync(self, client: httpx.AsyncClient):
        """Test that /status reflects the last sync."""
        body, headers = _signed({"source": "operator", "deviceId": "laptop-1"})
        await client.post("/sync", content=body, headers=headers)

        response = await client.get("/status")

        assert response.status_code == 200
        assert response.json()["lastSyncOutcome"] == "success"
        assert response.json()["trigger"] == "manual"

    async def test_tampered_body_rejected_without_side_effects(
        self, client: httpx.AsyncClient, status_store: FileSyncStatusStore, vault
    ):
        """Test that a body modified after signing is 401 and syncs nothing."""
        body, headers = _signed({"source": "laptop-2", "deviceId": "laptop-1"})
        tampered = body.replace(b"laptop-2", b"laptop-x")

        response = await client.post("/sync", content=tampered, headers=headers)

        assert response.status_code == 401
        assert response.json()["deviceId"] == "laptop-1"
        assert await status_store.read() is None
        assert vault.resolve_calls == []

    async def test_wrong_secret_rejected(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that a signature made with another secret is 401."""
        body, headers = _signed({"source": "laptop-2"}, secret="wrong")

        response = await client.post("/sync", content=body, headers=headers)

        assert response.status_code == 401
        assert await status_store.read() is None

    async def test_unsigned_request_rejected(self, client: httpx.AsyncClient):
        """Test that a missing signature is 401 when a secret is configured."""
        response = await client.post("/sync", json={"source": "laptop-2"})
        assert response.status_code == 401

    async def test_malformed_json(self, client: httpx.AsyncClient):
        """Test that an unparseable body is 400."""
        body = b"{not json"
        headers = {SIGNATURE_HEADER: compute_signature(SECRET, body)}

        response = await client.post("/sync", content=body, headers=headers)

        assert response.status_code == 400

    async def test_failed_sync_is_500(self, client: httpx.AsyncClient, vault, status_store: FileSyncStatusStore):
        """Test that a vault failure returns 500 and is visible in /status."""
        vault.authenticated = False
        body, headers = _signed({"source": "operator", "deviceId": "laptop-1"})

        response = await client.post("/sync", content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["result"]["error"] == "Vault CLI is not authenticated"
        status = await status_store.read()
        assert status.last_sync_outcome == SyncOutcome.FAILURE
        assert status.last_error == "Vault CLI is not authenticated"

    async def test_local_file_error_is_500_and_recorded(
        self, client: httpx.AsyncClient, vault, project_root: Path, status_store: FileSyncStatusStore
    ):
        """Test that an unwritable watched path fails the sync with a JSON 500 and a failed status."""
        (project_root / ".env.local").mkdir()
        vault.put(SecretReference.for_device_file("Development", "laptop-2", ".env.local"), "API_KEY=peer")
        body, headers = _signed({"source": "laptop-2", "deviceId": "laptop-1", "changedFile": ".env.local"})

        response = await client.post("/sync", content=body, headers=headers)

        assert response.status_code == 500
        data = response.json()
        assert data["deviceId"] == "laptop-1"
        assert data["result"]["error"].startswith("Local file error")
        status = await status_store.read()
        assert status.last_sync_outcome == SyncOutcome.FAILURE
        assert status.last_error == data["result"]["error"]

    async def test_insecure_mode_accepts_unsigned(
        self, synchronizer: SecretSynchronizer, status_store: FileSyncStatusStore
    ):
        """Test that with no secret configured, unsigned requests are processed."""
        app = create_app(device_id="laptop-1", synchronizer=synchronizer, status_store=status_store)
        transport = httpx.ASGITransport(app=app)

        async with httpx.AsyncClient(transport=transport, base_url="http://receiver") as c:
            response = await c.post("/sync", json={"source": "operator"})

        assert response.status_code == 200


@pytest.mark.unit
class TestWebhookEndpoint:
    """Tests for POST /webhook (CI deliveries)."""

    async def test_build_requested_pulls(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that a requested workflow run triggers a pull."""
        body, headers = _signed({"action": "requested", "workflow_run": {"name": "deploy"}})
        headers[EVENT_HEADER] = "workflow_run"

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["result"]["trigger"] == "webhook"
        assert (await status_store.read()).last_sync_outcome == SyncOutcome.SUCCESS

    async def test_github_signature_header_accepted(self, client: httpx.AsyncClient):
        """Test that X-Hub-Signature-256 is accepted as an alias."""
        body = json.dumps({"action": "rerequested"}).encode()
        headers = {GITHUB_SIGNATURE_HEADER: compute_signature(SECRET, body), EVENT_HEADER: "check_suite"}

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert "result" in response.json()

    async def test_build_completed_no_action(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that non-request build actions do not sync."""
        body, headers = _signed({"action": "completed"})
        headers[EVENT_HEADER] = "workflow_run"

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert "result" not in response.json()
        assert await status_store.read() is None

    async def test_push_touching_secret_file_pulls(self, client: httpx.AsyncClient):
        """Test that a push changing a secret file triggers a pull."""
        body, headers = _signed({"ref": "refs/heads/main", "commits": [{"modified": ["deploy/secrets.json"]}]})
        headers[EVENT_HEADER] = "push"

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["result"]["success"] is True

    async def test_push_without_secret_files(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that an unrelated push is acknowledged without syncing."""
        body, headers = _signed({"commits": [{"modified": ["README.md"]}]})
        headers[EVENT_HEADER] = "push"

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert await status_store.read() is None

    async def test_unknown_event(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that unknown events are acknowledged."""
        body, headers = _signed({"zen": "Design for failure."})
        headers[EVENT_HEADER] = "ping"

        response = await client.post("/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["event"] == "ping"
        assert await status_store.read() is None

    async def test_tampered_ci_delivery_rejected(self, client: httpx.AsyncClient, status_store: FileSyncStatusStore):
        """Test that a CI body modified after signing is 401."""
        body, headers = _signed({"action": "requested"})
        headers[EVENT_HEADER] = "workflow_run"

        response = await client.post("/webhook", content=body + b"\n", headers=headers)

        assert response.status_code == 401
        assert await status_store.read() is None


@pytest.mark.unit
class TestUnexpectedErrors:
    """Tests for errors that escape a route handler."""

    async def test_unhandled_error_is_json_500(self, synchronizer: SecretSynchronizer):
        """Test that an unexpected exception still answers with JSON and the device id."""

        class BrokenStatusStore:
            async def read(self):
                raise RuntimeError("status backend exploded")

            async def write(self, status):
                raise RuntimeError("status backend exploded")

        app = create_app(device_id="laptop-1", synchronizer=synchronizer, status_store=BrokenStatusStore())
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)

        async with httpx.AsyncClient(transport=transport, base_url="http://receiver") as c:
            response = await c.get("/status")

        assert response.status_code == 500
        assert response.json()["error"] == "Internal error"
        assert response.json()["deviceId"] == "laptop-1"


@pytest.mark.unit
class TestStartupSync:
    """Tests for the optional pull when the receiver starts."""

    async def test_health_served_while_startup_pull_runs(
        self, synchronizer: SecretSynchronizer, status_store: FileSyncStatusStore
    ):
        """Test that the startup pull runs in the background instead of delaying requests."""
        release = asyncio.Event()
        triggers = []

        async def slow_pull(trigger, source=None):
            triggers.append(trigger)
            await release.wait()

        synchronizer.pull = slow_pull
        app = create_app(
            device_id="laptop-1",
            synchronizer=synchronizer,
            status_store=status_store,
            webhook_secret=SECRET,
            sync_on_startup=True,
        )
        transport = httpx.ASGITransport(app=app)

        async with app.router.lifespan_context(app):
            async with httpx.AsyncClient(transport=transport, base_url="http://receiver") as c:
                response = await c.get("/health")
                await asyncio.sleep(0)

                assert response.status_code == 200
                assert triggers == [SyncTrigger.STARTUP]
                assert not release.is_set()
            release.set()
