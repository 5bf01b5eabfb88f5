# ABOUTME: Device secret sync package initialization
# ABOUTME: Exposes version information for the receiver, daemon and CLI

"""
Device Secret Sync - keep local secret files identical across a fleet of devices.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This is the package initialization file for the secret_sync package. It marks
the directory as a package and declares the version shown by
`secret-sync --version`.

=============================================================================
HOW THE SYNC WORKS
=============================================================================

Every device runs up to two cooperating processes:

1. DEVICE SYNC DAEMON: watches a fixed allow-list of secret files
   (.env.local, credentials.json, ...). When one changes it:
   - pushes the file's content into the vault as this device's copy
   - POSTs a signed notification to every other device's receiver
   - every few minutes, pulls from the vault anyway (self-healing)

2. WEBHOOK RECEIVER: a small HTTP server. When CI starts a build or a peer
   announces a change, it pulls the newest copy of each file from the vault
   and writes it locally.

The VAULT (1Password, via the `op` CLI) is the source of truth for secret
values. The DEVICE REGISTRY only says who to notify. A peer that misses a
notification catches up on its next periodic pull, so delivery can be
best-effort and the fleet still converges.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

secret_sync/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── cli.py               <- `secret-sync` command line (click)
├── config.py            <- Configuration management (env vars, settings)
├── models.py            <- Device, SyncStatus, SyncResult, SecretReference
├── events.py            <- Inbound webhook payload decoding
├── synchronizer.py      <- Full-refresh pull from the vault
├── receiver.py          <- Webhook receiver (FastAPI)
├── daemon.py            <- Device sync daemon (watchdog + timers)
└── utils/
    ├── __init__.py      <- Utils subpackage marker
    ├── logging.py       <- Structured logging and sync history
    ├── notifier.py      <- Peer fan-out and local pull trigger (httpx)
    ├── safety.py        <- HMAC signatures and the file allow-list
    ├── storage.py       <- Device registry, status and pulled-content files
    └── vault.py         <- 1Password CLI adapter
"""

# =============================================================================
# VERSION INFORMATION
# =============================================================================

# Semantic Versioning: MAJOR.MINOR.PATCH. 0.x.x means the HTTP payloads and
# state file layout may still change between releases.

__version__ = "0.1.0"

__all__ = ["__version__"]
