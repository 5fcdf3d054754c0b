"""
Anchor envelope codec.

An anchored digest travels in the data field of a zero-value transaction as
hex-encoded UTF-8 JSON: ``{"v": 1, "timestamp": ..., "hash": ..., <metadata>}``.
Decoding is lenient: anything that is not a well-formed envelope decodes to
``None`` instead of raising, since arbitrary transactions can be looked up.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agrichain.core.crypto import canonicalize_jcs_bytes, require_digest
from agrichain.core.errors import ValidationError

ENVELOPE_VERSION = 1
RESERVED_KEYS = frozenset({"timestamp", "hash", "v"})


@dataclass(frozen=True)
class AnchorEnvelope:
    timestamp: str
    hash: str
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int | None = ENVELOPE_VERSION

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.metadata)
        payload["timestamp"] = self.timestamp
        payload["hash"] = self.hash
        if self.version is not None:
            payload["v"] = self.version
        return payload


def build_envelope(
    digest: str,
    metadata: dict[str, Any] | None = None,
    *,
    timestamp: datetime | None = None,
) -> AnchorEnvelope:
    """Assemble an envelope for ``digest``; metadata may not shadow reserved keys."""
    require_digest(digest)
    metadata = dict(metadata or {})
    clashing = sorted(RESERVED_KEYS.intersection(metadata))
    if clashing:
        raise ValidationError(
            "Anchor metadata may not override reserved envelope keys",
            errors=[f"reserved key: {key}" for key in clashing],
        )
    moment = timestamp or datetime.now(UTC)
    return AnchorEnvelope(
        timestamp=moment.isoformat().replace("+00:00", "Z"),
        hash=digest,
        metadata=metadata,
    )


def encode_envelope(envelope: AnchorEnvelope) -> str:
    """Return the ``0x``-prefixed hex payload for a transaction data field."""
    return "0x" + canonicalize_jcs_bytes(envelope.to_dict()).hex()


def decode_envelope(data: str | None) -> AnchorEnvelope | None:
    if not data or not isinstance(data, str):
        return None
    raw = data[2:] if data[:2].lower() == "0x" else data
    if not raw:
        return None
    try:
        text = bytes.fromhex(raw).decode("utf-8")
        payload = json.loads(text)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None

    digest = payload.pop("hash", None)
    if not isinstance(digest, str) or not digest:
        return None
    timestamp = payload.pop("timestamp", None)
    version = payload.pop("v", None)
    return AnchorEnvelope(
        timestamp=str(timestamp) if timestamp is not None else "",
        hash=digest,
        metadata=payload,
        version=version if isinstance(version, int) else None,
    )
