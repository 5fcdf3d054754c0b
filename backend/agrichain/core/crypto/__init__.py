"""
Hashing primitives for provenance digests.

- **canonicalization**: RFC 8785 (JCS) canonical bytes and ``0x``-prefixed SHA-256 digests
"""

from agrichain.core.crypto.canonicalization import (
    CANONICALIZATION_RFC8785,
    DIGEST_PREFIX,
    SHA256_ALGORITHM,
    canonicalize_jcs_bytes,
    is_valid_digest,
    require_digest,
    sha256_hex_jcs,
    sha256_prefixed,
)

__all__ = [
    "canonicalize_jcs_bytes",
    "sha256_hex_jcs",
    "sha256_prefixed",
    "is_valid_digest",
    "require_digest",
    "CANONICALIZATION_RFC8785",
    "DIGEST_PREFIX",
    "SHA256_ALGORITHM",
]
