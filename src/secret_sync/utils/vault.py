# ABOUTME: Secret store adapter wrapping the external vault CLI as a subprocess
# ABOUTME: Provides async resolve/store/auth-check with bounded timeouts and typed errors

"""
Secret store adapter for the external vault CLI.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The vault is the single source of truth for secret VALUES. This module is the
only code that talks to it, and it does so exclusively by running the vault
CLI (`op`) as a subprocess. It provides:

1. A NARROW INTERFACE (SecretStore protocol) that the receiver, the daemon and
   the synchronizer depend on, so a different backend or an in-memory fake can
   be swapped in without touching them.
2. THE CLI IMPLEMENTATION (OnePasswordStore) mapping each operation to a CLI
   command.
3. A TYPED ERROR TAXONOMY so callers never see raw subprocess failures.

=============================================================================
CLI CONTRACT
=============================================================================

    resolve(ref)          ->  op read op://<vault>/<item>/<field>
    store(ref, content)   ->  op document create - --title <item> --vault <vault>
                              --file-name <field>      (content on stdin)
                              falling back to
                              op document edit <item> - --vault <vault> --file-name <field>
    is_authenticated()    ->  op account list          (account name in output)
    last_modified(ref)    ->  op item get <item> --vault <vault> --format json

Success is exit code 0. For reads, stdout must also be non-empty.

=============================================================================
WHY NO RETRIES HERE?
=============================================================================

Every operation is a single attempt. The adapter can't tell whether a failed
write is worth repeating; the caller can. The synchronizer retries
VaultTimeout during a pull, the daemon relies on its periodic cycle, and the
receiver reports the failure to its HTTP caller.

=============================================================================
TIMEOUTS
=============================================================================

A hung CLI (waiting for a desktop-app unlock, a dead network) must not wedge
the single event loop. Every invocation is bounded by VaultSettings.timeout;
on expiry the process is killed and VaultTimeout is raised.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from secret_sync.utils.safety import mask_secrets

if TYPE_CHECKING:
    from secret_sync.config import VaultSettings
    from secret_sync.models import SecretReference

logger = structlog.get_logger(__name__)

# Substrings in `op` stderr that mean "the item already exists" on create.
# Real `op document create` accepts duplicate titles, so existence is probed
# first (see OnePasswordStore.store); these patterns cover a concurrent
# creator winning the race, and CLI versions that enforce unique titles.
CONFLICT_MARKERS = ("already exists", "isn't unique", "more than one item", "conflict")

# Substrings in `op` stderr that mean "no such item" on lookup.
NOT_FOUND_MARKERS = ("isn't an item", "not found", "no item", "could not find")

_FRACTION = re.compile(r"(\.\d+)")


# =============================================================================
# ERROR TAXONOMY
# =============================================================================


class SecretStoreError(Exception):
    """
    Base class for all vault adapter failures.

    Messages are built from MASKED CLI output so they are safe to log and to
    return in HTTP responses.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = mask_secrets(details) if details else None
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" - {self.details}"
        return base


class AuthenticationError(SecretStoreError):
    """The vault CLI has no valid session for the configured account."""


class SecretNotFound(SecretStoreError):
    """A reference resolved to nothing (non-zero exit or empty output)."""


class SecretWriteFailed(SecretStoreError):
    """Neither create nor update of a document succeeded."""


class VaultTimeout(SecretStoreError):
    """The CLI did not finish within the configured timeout and was killed."""


# =============================================================================
# INTERFACE
# =============================================================================


@runtime_checkable
class SecretStore(Protocol):
    """
    What the sync logic needs from a vault.

    Implementations: OnePasswordStore (production) and the in-memory fake
    used by the test suite.
    """

    async def resolve(self, ref: SecretReference) -> str:
        """Return the trimmed value at ref. Raises SecretNotFound."""
        ...

    async def store(self, ref: SecretReference, content: bytes) -> None:
        """Create-or-update the document at ref. Raises SecretWriteFailed."""
        ...

    async def is_authenticated(self) -> bool:
        """Cheap session probe. Never cached."""
        ...

    async def last_modified(self, ref: SecretReference) -> datetime | None:
        """Modification time of ref's item, or None when it does not exist."""
        ...


# =============================================================================
# CLI IMPLEMENTATION
# =============================================================================


@dataclass
class CommandResult:
    """Captured outcome of one CLI invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class OnePasswordStore:
    """
    SecretStore backed by the 1Password CLI.

    USAGE:
    ------
        store = OnePasswordStore(settings.vault)
        if not await store.is_authenticated():
            ...
        value = await store.resolve(SecretReference("Development", "api", "token"))
    """

    def __init__(self, settings: VaultSettings) -> None:
        """
        Args:
            settings: CLI path, account, default vault and per-call timeout.
        """
        self._settings = settings

    # -------------------------------------------------------------------------
    # SUBPROCESS PLUMBING
    # -------------------------------------------------------------------------

    def _account_args(self) -> list[str]:
        return ["--account", self._settings.account] if self._settings.account else []

    async def _run(self, *args: str, stdin: bytes | None = None) -> CommandResult:
        """
        Run the CLI once and capture its output.

        The argument vector is passed straight to exec (no shell), so item
        names and content can never be interpreted as shell syntax.

        Raises:
            VaultTimeout: If the process outlives the configured timeout.
            SecretStoreError: If the CLI executable cannot be started.
        """
        argv = [self._settings.cli_path, *args]
        log = logger.bind(command=" ".join(args[:2]))
        log.debug("vault_cli_invoked")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SecretStoreError(f"Cannot run vault CLI '{self._settings.cli_path}'", str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=stdin),
                timeout=self._settings.timeout,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            log.warning("vault_cli_timeout", timeout=self._settings.timeout)
            raise VaultTimeout(
                f"Vault CLI timed out after {self._settings.timeout:g}s",
                " ".join(args[:2]),
            ) from e

        result = CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if not result.ok:
            log.debug("vault_cli_failed", returncode=result.returncode, stderr=mask_secrets(result.stderr[:200]))
        return result

    # -------------------------------------------------------------------------
    # SECRET STORE OPERATIONS
    # -------------------------------------------------------------------------

    async def resolve(self, ref: SecretReference) -> str:
        """
        Read one secret value.

        Raises:
            SecretNotFound: Non-zero exit or empty output.
            VaultTimeout: CLI hung.
        """
        result = await self._run("read", ref.uri, *self._account_args())
        value = result.stdout.strip()
        if not result.ok:
            raise SecretNotFound(f"Secret not found: {ref}", result.stderr.strip() or None)
        if not value:
            raise SecretNotFound(f"Secret is empty: {ref}")
        return value

    async def store(self, ref: SecretReference, content: bytes) -> None:
        """
        Create or update the document at ref with content.

        IDEMPOTENCY:
        ------------
        The CLI happily creates a second document with the same title, so a
        blind "create" would duplicate items on every call. Instead:

        1. Probe whether the item exists (op item get)
        2. Absent -> create; if create reports a conflict (someone else created
           it in between) -> fall through to edit
        3. Present -> edit in place

        Calling store twice with identical content leaves exactly one item.

        Raises:
            SecretWriteFailed: Create and edit both failed, or a non-conflict error.
            VaultTimeout: CLI hung.
        """
        exists = await self.last_modified(ref) is not None

        if not exists:
            created = await self._run(
                "document",
                "create",
                "-",
                "--title",
                ref.item,
                "--vault",
                ref.vault,
                "--file-name",
                ref.field,
                *self._account_args(),
                stdin=content,
            )
            if created.ok:
                logger.info("vault_document_created", item=ref.item, vault=ref.vault)
                return
            if not _matches(created.stderr, CONFLICT_MARKERS):
                raise SecretWriteFailed(f"Failed to create {ref.item}", created.stderr.strip() or None)
            logger.info("vault_document_conflict", item=ref.item, vault=ref.vault)

        edited = await self._run(
            "document",
            "edit",
            ref.item,
            "-",
            "--vault",
            ref.vault,
            "--file-name",
            ref.field,
            *self._account_args(),
            stdin=content,
        )
        if not edited.ok:
            raise SecretWriteFailed(f"Failed to update {ref.item}", edited.stderr.strip() or None)
        logger.info("vault_document_updated", item=ref.item, vault=ref.vault)

    async def is_authenticated(self) -> bool:
        """
        Check the CLI session.

        True when `op account list` exits 0 and (if an account is configured)
        mentions it. Any failure, including a missing executable or a timeout,
        is reported as False.
        """
        try:
            result = await self._run("account", "list")
        except SecretStoreError as e:
            logger.warning("vault_auth_probe_failed", error=str(e))
            return False
        if not result.ok:
            return False
        if self._settings.account:
            return self._settings.account in result.stdout
        return bool(result.stdout.strip())

    async def last_modified(self, ref: SecretReference) -> datetime | None:
        """
        Modification time of the item at ref, or None if it does not exist.

        Raises:
            SecretStoreError: Lookup failed for a reason other than "not found".
        """
        result = await self._run(
            "item",
            "get",
            ref.item,
            "--vault",
            ref.vault,
            "--format",
            "json",
            *self._account_args(),
        )
        if not result.ok:
            if _matches(result.stderr, NOT_FOUND_MARKERS):
                return None
            raise SecretStoreError(f"Failed to look up {ref.item}", result.stderr.strip() or None)

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise SecretStoreError(f"Unreadable item metadata for {ref.item}") from e
        # An existing item without timestamps still has to read as "exists"
        return _parse_cli_time(data.get("updated_at") or data.get("created_at")) or datetime.min.replace(
            tzinfo=UTC
        )


def _matches(stderr: str, markers: tuple[str, ...]) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in markers)


def _parse_cli_time(value: str | None) -> datetime | None:
    """Parse the CLI's RFC 3339 timestamps ("2024-01-15T10:30:00.123456789Z")."""
    if not value:
        return None
    # datetime only keeps microseconds
    value = _FRACTION.sub(lambda m: m.group(1)[:7], value)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
