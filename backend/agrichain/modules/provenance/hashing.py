"""
Deterministic digests over provenance claims and their attachments.

The record digest is SHA-256 over the RFC 8785 canonical form of the claim's
hashed fields. The combined digest binds attachments in submission order:
SHA-256 over the ASCII concatenation of the record digest and each file digest.
"""

from __future__ import annotations

import dataclasses
import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from agrichain.core.crypto import (
    DIGEST_PREFIX,
    canonicalize_jcs_bytes,
    is_valid_digest,
    require_digest,
    sha256_prefixed,
)
from agrichain.core.errors import ValidationError
from agrichain.modules.provenance.claims import (
    FileUpload,
    ProvenanceClaim,
    normalize_event_date,
    normalize_quantity,
    normalize_text,
    validate_claim,
)

SYSTEM_NAME = "AgriChain"


@dataclass(frozen=True)
class CombinedDigest:
    record_digest: str
    combined_digest: str | None
    file_digests: tuple[str, ...] = ()

    @property
    def anchored_digest(self) -> str:
        """Digest that goes on the ledger: combined when files exist."""
        return self.combined_digest or self.record_digest


def combine_digests(record_digest: str, file_digests: Sequence[str]) -> str:
    require_digest(record_digest, field="record_digest")
    for digest in file_digests:
        require_digest(digest, field="file_digest")
    joined = record_digest + "".join(file_digests)
    return DIGEST_PREFIX + hashlib.sha256(joined.encode("ascii")).hexdigest()


class HashEngine:
    """Pure digest computation; holds no state between calls."""

    def __init__(self, *, system_name: str = SYSTEM_NAME) -> None:
        self._system_name = system_name

    def stamp(self, claim: ProvenanceClaim, *, now: datetime | None = None) -> ProvenanceClaim:
        """Fix ``recorded_at`` on a claim that does not carry one yet."""
        if claim.recorded_at:
            return claim
        moment = (now or datetime.now(UTC)).astimezone(UTC)
        return dataclasses.replace(
            claim,
            recorded_at=moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        )

    def canonical_payload(self, claim: ProvenanceClaim) -> dict[str, Any]:
        """
        Return the dict that is hashed for ``claim``.

        Only fields that define the claim are included; ``notes`` is a mutable
        annotation and stays out so that editing it never changes the digest.
        """
        validate_claim(claim).raise_for_errors("Claim is not valid")
        if not claim.recorded_at:
            raise ValidationError(
                "Claim must be stamped before hashing",
                errors=["recorded_at is required"],
            )
        return {
            "system": self._system_name,
            "schema_version": claim.schema_version,
            "recorded_at": claim.recorded_at,
            "producer_id": normalize_text(claim.producer_id),
            "product": normalize_text(claim.product),
            "location": normalize_text(claim.location),
            "event_date": normalize_event_date(claim.event_date),
            "quantity": normalize_quantity(claim.quantity),
            "quality": normalize_text(claim.quality),
        }

    def digest_payload(self, payload: dict[str, Any]) -> str:
        return sha256_prefixed(canonicalize_jcs_bytes(payload))

    def digest(self, claim: ProvenanceClaim) -> str:
        return self.digest_payload(self.canonical_payload(claim))

    def digest_file(self, content: bytes) -> str:
        return sha256_prefixed(content)

    def digest_combined(
        self,
        claim: ProvenanceClaim,
        files: Sequence[FileUpload] | None = None,
    ) -> CombinedDigest:
        record_digest = self.digest(claim)
        if not files:
            return CombinedDigest(record_digest=record_digest, combined_digest=None)
        file_digests = tuple(self.digest_file(upload.content) for upload in files)
        return CombinedDigest(
            record_digest=record_digest,
            combined_digest=combine_digests(record_digest, file_digests),
            file_digests=file_digests,
        )

    def verify(self, claim: ProvenanceClaim, expected: str) -> bool:
        """True when ``claim`` hashes to ``expected``; a malformed ``expected`` is never equal."""
        if not is_valid_digest(expected):
            return False
        return self.digest(claim) == expected
