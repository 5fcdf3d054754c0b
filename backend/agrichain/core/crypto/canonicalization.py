"""Canonicalization and digest helpers for stable cross-platform hashing."""

from __future__ import annotations

import hashlib
import re
from typing import Any

import rfc8785

from agrichain.core.errors import InvalidDigestError

CANONICALIZATION_RFC8785 = "rfc8785"
SHA256_ALGORITHM = "sha-256"

DIGEST_PREFIX = "0x"
_DIGEST_RE = re.compile(r"^0x[0-9a-f]{64}$")


def canonicalize_jcs_bytes(data: Any) -> bytes:
    """Return RFC 8785 (JCS) canonical bytes."""
    canonical = rfc8785.dumps(data)
    if isinstance(canonical, bytes):
        return canonical
    return str(canonical).encode("utf-8")


def sha256_hex_jcs(data: Any) -> str:
    """Compute SHA-256 hex digest over RFC 8785 canonical bytes."""
    return hashlib.sha256(canonicalize_jcs_bytes(data)).hexdigest()


def sha256_prefixed(data: bytes) -> str:
    """Return ``0x`` followed by the lowercase SHA-256 hex digest of ``data``."""
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


def is_valid_digest(value: object) -> bool:
    """Check the ``0x`` + 64 lowercase hex characters digest format."""
    return isinstance(value, str) and _DIGEST_RE.match(value) is not None


def require_digest(value: object, *, field: str = "digest") -> str:
    """Return ``value`` unchanged or raise ``InvalidDigestError``."""
    if not is_valid_digest(value):
        raise InvalidDigestError(
            f"{field} must be 0x followed by 64 lowercase hex characters",
            details={"field": field},
        )
    return str(value)
