# ABOUTME: Configuration management for the device secret sync service
# ABOUTME: Handles environment variables, vault CLI settings, and derived state paths

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the two sync processes (the webhook
receiver and the device sync daemon). It:

1. READS environment variables (like DEVICE_ID, WEBHOOK_SECRET, OP_ACCOUNT)
2. VALIDATES them (watched files are bare names, log levels are real levels)
3. PROVIDES typed access to settings and to the derived state file paths

=============================================================================
ARCHITECTURE: TWO CONFIGURATION CLASSES
=============================================================================

1. VaultSettings: How to reach the external vault CLI (OP_* prefix)
   - Account name, vault name, CLI executable, per-call timeout

2. SyncSettings: Main configuration container (SECRET_SYNC_* prefix)
   - Device identity, watched files, receiver address, shared secret
   - Timers and timeouts for the periodic cycle and peer fan-out
   - Contains VaultSettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Identity and transport (short names kept for existing deployments):
    DEVICE_ID           -> Stable identifier for this machine
    SYNC_PORT           -> Port the webhook receiver listens on (default: 3000)
    SYNC_URL            -> Receiver URL this device advertises to peers
    WEBHOOK_SECRET      -> Shared HMAC secret (empty = verification skipped)

Vault CLI (OP_ prefix):
    OP_ACCOUNT          -> Account that must appear in `op account list`
    OP_VAULT            -> Vault holding the synced documents
    OP_CLI_PATH         -> Path to the CLI executable
    OP_TIMEOUT          -> Seconds before a hung CLI call is killed

Everything else uses the SECRET_SYNC_ prefix, e.g.:
    SECRET_SYNC_SYNC_INTERVAL      -> Seconds between periodic pulls (default: 300)
    SECRET_SYNC_WATCH_FILES        -> JSON array of watched file names
    SECRET_SYNC_LOCAL_RECEIVER_URL -> Delegate daemon pulls to the local receiver
"""

from __future__ import annotations

import os
import socket
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

import structlog
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

DEFAULT_WATCH_FILES = [".env.local", "credentials.json", "secrets.json"]
DEFAULT_CI_SECRET_FILES = [".env.local", ".env", "secrets.json", "credentials.json"]

# =============================================================================
# VAULT CLI SETTINGS
# =============================================================================


class VaultSettings(BaseSettings):
    """
    Settings for the external vault CLI.

    The vault is the single source of truth for secret VALUES. This process
    never talks to it over the network directly; it shells out to the CLI,
    which owns the session, the encryption and the storage.
    """

    model_config = SettingsConfigDict(env_prefix="OP_")

    account: str = Field(
        default="",
        description="Account name expected in the CLI's account list",
    )
    # The auth probe runs `op account list` and checks this name appears in
    # the output. Empty means "any signed-in account is good enough".

    vault: str = Field(
        default="Development",
        description="Vault that stores the synced documents",
    )

    cli_path: str = Field(
        default="op",
        description="Vault CLI executable",
    )
    # Resolved through PATH when not absolute. Tests point this at a fake
    # script to exercise the subprocess contract.

    timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds before a CLI invocation is killed",
    )
    # A hung CLI (waiting on a biometric prompt, a dead network) must never
    # wedge the daemon's periodic cycle.


# =============================================================================
# MAIN SYNC SETTINGS
# =============================================================================


class SyncSettings(BaseSettings):
    """
    Main sync service configuration.

    This is the top-level configuration container that:
    1. Identifies this device and where its receiver can be reached
    2. Lists the secret-bearing files that are watched and refreshed
    3. Holds the timers that drive the periodic convergence cycle
    4. Contains nested VaultSettings

    USAGE:
    ------
        settings = load_settings()
        settings.registry_path        # <project_root>/.sync-service/devices.json
        settings.vault.account        # OP_ACCOUNT
    """

    model_config = SettingsConfigDict(
        env_prefix="SECRET_SYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # DEVICE IDENTITY
    # -------------------------------------------------------------------------

    device_id: str = Field(
        default="",
        validation_alias="DEVICE_ID",
        description="Operator-assigned device identifier",
    )
    # Empty means "derive one": see resolve_device_id().

    hostname: str = Field(
        default_factory=socket.gethostname,
        description="Hostname recorded in the device registry",
    )

    # -------------------------------------------------------------------------
    # FILES
    # -------------------------------------------------------------------------

    project_root: Path = Field(
        default_factory=Path.cwd,
        description="Directory containing the watched secret files",
    )

    state_dir: Path | None = Field(
        default=None,
        description="Directory for registry/status/history (default: <project_root>/.sync-service)",
    )

    watch_files: list[str] = Field(
        default_factory=lambda: list(DEFAULT_WATCH_FILES),
        description="Allow-list of secret-bearing file names relative to project_root",
    )
    # Explicit names only. No globs, no directories, no nested paths: anything
    # not on this list is never read, pushed or overwritten.

    ci_secret_files: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CI_SECRET_FILES),
        description="File names whose change in a CI push event triggers a pull",
    )

    # -------------------------------------------------------------------------
    # WEBHOOK RECEIVER
    # -------------------------------------------------------------------------

    host: str = Field(default="0.0.0.0", description="Receiver bind address")  # noqa: S104

    port: int = Field(
        default=3000,
        validation_alias="SYNC_PORT",
        description="Receiver listening port",
    )

    sync_url: str | None = Field(
        default=None,
        validation_alias="SYNC_URL",
        description="Receiver URL advertised to peers (None = pull-only device)",
    )

    webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="WEBHOOK_SECRET",
        description="Shared HMAC secret for signed webhooks",
    )
    # Empty secret is the explicit insecure mode: signatures are not checked
    # and a warning is logged for every POST.

    sync_on_startup: bool = Field(
        default=True,
        description="Receiver pulls from the vault once when it starts",
    )

    # -------------------------------------------------------------------------
    # TIMERS AND BOUNDS
    # -------------------------------------------------------------------------

    sync_interval: float = Field(default=300.0, gt=0, description="Periodic cycle interval (s)")
    sync_timeout: float = Field(default=120.0, gt=0, description="Bound on one sync attempt (s)")
    notify_timeout: float = Field(default=10.0, gt=0, description="Bound on one peer call (s)")
    notify_concurrency: int = Field(default=10, ge=1, description="Parallel peer calls")
    shutdown_timeout: float = Field(default=30.0, gt=0, description="Wait for in-flight work (s)")
    debounce_seconds: float = Field(default=1.0, ge=0, description="Coalesce file events (s)")

    local_receiver_url: str | None = Field(
        default=None,
        description="When set, the daemon delegates periodic pulls to this receiver",
    )
    # Keeps the receiver the only process that writes the secret files.

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    # -------------------------------------------------------------------------
    # NESTED VAULT SETTINGS
    # -------------------------------------------------------------------------

    vault: VaultSettings = Field(default_factory=VaultSettings)

    # -------------------------------------------------------------------------
    # VALIDATORS
    # -------------------------------------------------------------------------

    @field_validator("watch_files", "ci_secret_files")
    @classmethod
    def validate_bare_names(cls, v: list[str]) -> list[str]:
        """
        Reject anything that is not a plain file name.

        The receiver writes these files with content from the vault, so a
        name like "../../.bashrc" would turn a vault entry into an arbitrary
        file write. Duplicates are dropped, order is preserved.
        """
        seen: list[str] = []
        for name in v:
            if not name or name in (".", "..") or "/" in name or "\\" in name:
                raise ValueError(f"watched file must be a bare file name: {name!r}")
            if name not in seen:
                seen.append(name)
        return seen

    @field_validator("sync_url", "local_receiver_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Normalize empty strings to None and strip trailing slashes."""
        if not v:
            return None
        if not v.startswith(("http://", "https://")):
            v = f"http://{v}"
        return v.rstrip("/")

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def resolved_state_dir(self) -> Path:
        """Directory holding all durable local state."""
        return self.state_dir or (self.project_root / ".sync-service")

    @property
    def registry_path(self) -> Path:
        return self.resolved_state_dir / "devices.json"

    @property
    def status_path(self) -> Path:
        return self.resolved_state_dir / "sync-status.json"

    @property
    def pulled_path(self) -> Path:
        """Fingerprints of the content each pull last wrote, per file."""
        return self.resolved_state_dir / "pulled.json"

    @property
    def history_path(self) -> Path:
        return self.resolved_state_dir / "logs" / "sync-history.jsonl"

    @property
    def identity_path(self) -> Path:
        return self.resolved_state_dir / "device-id"

    @property
    def watched_paths(self) -> list[Path]:
        """Absolute paths of the allow-listed files."""
        return [self.project_root / name for name in self.watch_files]

    @property
    def signing_secret(self) -> str:
        """Shared webhook secret as plain text ("" when unset)."""
        return self.webhook_secret.get_secret_value()


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> SyncSettings:
    """
    Load settings from environment with validation.

    If SECRET_SYNC_ENV_FILE is set, variables are also read from that dotenv
    file, which is how setup scripts hand configuration to both processes.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return SyncSettings(
        _env_file=os.environ.get("SECRET_SYNC_ENV_FILE"),
    )


def resolve_device_id(settings: SyncSettings) -> str:
    """
    Return this machine's stable device id.

    Resolution order:
    1. DEVICE_ID from configuration
    2. The identity file written by a previous run
    3. A new "<hostname>-<UTC timestamp>" id, persisted to the identity file

    The generated id includes its creation time so two machines that share a
    hostname (cloned VMs, default laptop names) still get distinct ids.
    """
    if settings.device_id:
        return settings.device_id

    path = settings.identity_path
    if path.exists():
        stored = path.read_text().strip()
        if stored:
            return stored

    generated = f"{settings.hostname}-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generated + "\n")
    logger.info("device_id_generated", device_id=generated, path=str(path))
    return generated
