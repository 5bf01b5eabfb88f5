# ABOUTME: Safety utilities for the secret sync service
# ABOUTME: Implements webhook signatures, watched-file allow-listing, and secret masking

"""Safety utilities: request authentication, path allow-listing, output masking."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"
# GitHub signs deliveries with this header; accepted as an alias.
GITHUB_SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="

MASK = "***MASKED***"

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}"),
    # Session tokens printed by the vault CLI on auth errors
    (re.compile(r"(OP_SESSION_\w+\s*=\s*)\S+"), rf"\1{MASK}"),
]


class SignatureMismatch(Exception):
    """Raised when a request body does not match its HMAC signature."""


@dataclass
class SignatureCheck:
    """Outcome of a signature check that did not fail."""

    verified: bool
    reason: str


def compute_signature(secret: str, body: bytes) -> str:
    """Return the header value for body: "sha256=<hex HMAC-SHA256>"."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def signature_from_headers(headers: Mapping[str, str]) -> str | None:
    """Pick the signature header, preferring X-Signature over the GitHub alias."""
    return headers.get(SIGNATURE_HEADER) or headers.get(GITHUB_SIGNATURE_HEADER)


def verify_signature(secret: str, body: bytes, signature: str | None) -> SignatureCheck:
    """Verify a raw request body against its signature header.

    With no shared secret configured verification is skipped (insecure mode)
    and a warning is logged every time. With a secret, a missing or wrong
    signature raises SignatureMismatch. Comparison is constant-time.

    Args:
        secret: Shared webhook secret ("" = insecure mode)
        body: Raw request body exactly as received
        signature: Header value, "sha256=<hex>"

    Raises:
        SignatureMismatch: If the signature is absent or does not match
    """
    if not secret:
        logger.warning("signature_verification_skipped", reason="no webhook secret configured")
        return SignatureCheck(verified=False, reason="insecure mode")

    if not signature:
        raise SignatureMismatch("Missing signature header")

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(signature.strip().encode(), expected.encode()):
        raise SignatureMismatch("Invalid signature")

    return SignatureCheck(verified=True, reason="signature valid")


def signed_headers(secret: str, body: bytes) -> dict[str, str]:
    """Headers for an outbound JSON request, signed when a secret is set."""
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[SIGNATURE_HEADER] = compute_signature(secret, body)
    return headers


class WatchedFiles:
    """Allow-list of secret-bearing files under one root directory.

    Every read (daemon push) and write (receiver pull) goes through resolve(),
    so a name arriving from an HTTP payload or a filesystem event can only
    ever map to one of the configured files.
    """

    def __init__(self, root: Path, names: Iterable[str]) -> None:
        self._root = root.resolve()
        self._names = tuple(names)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def paths(self) -> list[Path]:
        return [self._root / name for name in self._names]

    def resolve(self, name_or_path: str | Path) -> Path | None:
        """Map a file name or path to its allow-listed path, or None.

        Paths are matched on their parent directory AND name, so a file with
        a watched name elsewhere on disk is not accepted.
        """
        candidate = Path(name_or_path)
        if candidate.is_absolute() or len(candidate.parts) > 1:
            if candidate.resolve().parent != self._root:
                return None
        name = candidate.name
        if name not in self._names:
            return None
        return self._root / name

    def __contains__(self, name_or_path: object) -> bool:
        if not isinstance(name_or_path, (str, Path)):
            return False
        return self.resolve(name_or_path) is not None


def mask_secrets(data: Any) -> Any:
    """Mask sensitive values in strings, dicts and lists.

    Used on CLI stderr before it is logged or returned in an error message.
    """
    if isinstance(data, str):
        masked = data
        for pattern, replacement in SECRET_PATTERNS:
            masked = pattern.sub(replacement, masked)
        return masked
    if isinstance(data, dict):
        return {k: mask_secrets(v) for k, v in data.items()}
    if isinstance(data, list):
        return [mask_secrets(item) for item in data]
    return data
