# ABOUTME: Pytest fixtures and configuration for device secret sync tests
# ABOUTME: Provides an in-memory vault fake and file-backed stores under tmp_path

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from secret_sync.config import SyncSettings, VaultSettings
from secret_sync.models import Device, SecretReference
from secret_sync.synchronizer import SecretSynchronizer
from secret_sync.utils.logging import SyncHistoryLog
from secret_sync.utils.safety import WatchedFiles
from secret_sync.utils.storage import FileDeviceRegistry, FileSyncStatusStore, PulledContentLog
from secret_sync.utils.vault import AuthenticationError, SecretNotFound

WATCH_FILES = [".env.local", "credentials.json"]
VAULT_NAME = "Development"


class InMemorySecretStore:
    """
    SecretStore fake shared by every simulated device in a test.

    Each store() bumps a logical clock by one second, so "newest wins" is
    deterministic regardless of how fast the test runs.
    """

    def __init__(self) -> None:
        self.items: dict[str, tuple[str, datetime]] = {}
        self.authenticated = True
        self.store_error: Exception | None = None
        self.store_calls: list[tuple[str, bytes]] = []
        self.resolve_calls: list[str] = []
        self._clock = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)

    def put(self, ref: SecretReference, value: str) -> None:
        """Seed an item directly, as if another device had stored it."""
        self._clock += timedelta(seconds=1)
        self.items[str(ref)] = (value, self._clock)

    async def resolve(self, ref: SecretReference) -> str:
        self.resolve_calls.append(str(ref))
        if str(ref) not in self.items:
            raise SecretNotFound(f"Secret not found: {ref}")
        return self.items[str(ref)][0].strip()

    async def store(self, ref: SecretReference, content: bytes) -> None:
        self.store_calls.append((str(ref), content))
        if not self.authenticated:
            raise AuthenticationError("Vault CLI is not authenticated")
        if self.store_error is not None:
            raise self.store_error
        self.put(ref, content.decode())

    async def is_authenticated(self) -> bool:
        return self.authenticated

    async def last_modified(self, ref: SecretReference) -> datetime | None:
        item = self.items.get(str(ref))
        return item[1] if item else None


@pytest.fixture
def vault() -> InMemorySecretStore:
    """Create an empty in-memory vault."""
    return InMemorySecretStore()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Directory holding the watched secret files."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def watched(project_root: Path) -> WatchedFiles:
    """Allow-list of the test's watched files."""
    return WatchedFiles(project_root, WATCH_FILES)


@pytest.fixture
def registry(tmp_path: Path) -> FileDeviceRegistry:
    """Create a file-backed device registry under tmp_path."""
    return FileDeviceRegistry(tmp_path / "state" / "devices.json")


@pytest.fixture
def status_store(tmp_path: Path) -> FileSyncStatusStore:
    """Create a file-backed status store under tmp_path."""
    return FileSyncStatusStore(tmp_path / "state" / "sync-status.json")


@pytest.fixture
def pulled(tmp_path: Path) -> PulledContentLog:
    """Fingerprints of pulled content, shared by synchronizer and daemon."""
    return PulledContentLog(tmp_path / "state" / "pulled.json")


@pytest.fixture
def history(tmp_path: Path) -> SyncHistoryLog:
    """Create a history log writing JSON lines under tmp_path."""
    return SyncHistoryLog("laptop-1", tmp_path / "state" / "logs" / "sync-history.jsonl")


@pytest.fixture
def synchronizer(
    vault: InMemorySecretStore,
    registry: FileDeviceRegistry,
    status_store: FileSyncStatusStore,
    watched: WatchedFiles,
    history: SyncHistoryLog,
    pulled: PulledContentLog,
) -> SecretSynchronizer:
    """Create a synchronizer for device laptop-1."""
    return SecretSynchronizer(
        device_id="laptop-1",
        vault_name=VAULT_NAME,
        store=vault,
        registry=registry,
        status_store=status_store,
        watched=watched,
        history=history,
        timeout=5.0,
        retry_attempts=1,
        pulled=pulled,
    )


@pytest.fixture
def sync_settings(tmp_path: Path, project_root: Path) -> SyncSettings:
    """Create sync settings pointing at tmp_path."""
    return SyncSettings(
        device_id="laptop-1",
        hostname="laptop-1.local",
        project_root=project_root,
        state_dir=tmp_path / "state",
        watch_files=WATCH_FILES,
        webhook_secret="test-secret",
        vault=VaultSettings(account="my.1password.com", vault=VAULT_NAME),
    )


def _make_device(device_id: str, sync_url: str | None = None) -> Device:
    return Device(
        id=device_id,
        hostname=f"{device_id}.local",
        platform="linux",
        architecture="x86_64",
        sync_endpoint=sync_url,
    )


@pytest.fixture
def make_device() -> Callable[..., Device]:
    """Factory for device records: make_device(id, sync_url=None)."""
    return _make_device
