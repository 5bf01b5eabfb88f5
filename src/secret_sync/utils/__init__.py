# ABOUTME: Utilities package initialization for device secret sync
# ABOUTME: Contains shared utilities for the vault, storage, signing, notification and logging

"""
Device Secret Sync Utilities Package

Shared utilities:
    - vault.py: 1Password CLI adapter with a typed error taxonomy
    - storage.py: Atomic JSON files for the device registry, sync status and pulled-content fingerprints
    - safety.py: HMAC signatures and the watched-file allow-list
    - notifier.py: Peer notification fan-out and the local pull trigger
    - logging.py: Structured logging with correlation IDs and sync history
"""
