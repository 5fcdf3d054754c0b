"""
Provenance coordinator.

Orchestrates hashing, ledger anchoring and persistence for the three request
flows: store (hash, anchor, persist), retrieve (load, best-effort ledger
cross-check) and verify (recompute, compare, always log).

Store is not transactional across the ledger and the database. When anything
fails after the anchor is confirmed, the anchor stays on-chain without a local
record; this is reported as ``anchor_orphaned`` and never retried here, since a
retry would re-anchor and pay again. An anchor whose receipt does not arrive
in time is kept as a pending anchor row without a record, and
``tools/confirm_pending_anchors.py`` reconfirms such rows later.

A verification verdict is returned even when its log row cannot be committed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from agrichain.core.audit import CallerContext
from agrichain.core.config import Settings, get_settings
from agrichain.core.errors import (
    ConfirmationTimeoutError,
    PersistenceError,
    ProvenanceError,
    ValidationError,
)
from agrichain.core.logging import get_logger, short_hex
from agrichain.db.models import (
    FileAttachment,
    LedgerAnchor,
    ProvenanceRecord,
    RecordStatus,
    VerificationMethod,
)
from agrichain.modules.ledger.service import AnchorResult, LedgerAnchorService, LedgerRecovery
from agrichain.modules.provenance.attachments import AttachmentStorage, StoredFile
from agrichain.modules.provenance.claims import (
    FileUpload,
    ProducerInfo,
    ProvenanceClaim,
    validate_claim,
    validate_producer_info,
    validate_uploads,
)
from agrichain.modules.provenance.hashing import CombinedDigest, HashEngine
from agrichain.modules.provenance.store import (
    UNSET,
    AttachmentDraft,
    AttachmentStatistics,
    LookupField,
    RecordBundle,
    RecordDraft,
    RecordStore,
    VerificationStatistics,
)

logger = get_logger(__name__)


class VerificationOutcome(str, Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"


@dataclass(frozen=True)
class StoreResult:
    record_id: int
    data_digest: str
    combined_digest: str | None
    anchored_digest: str
    anchor: AnchorResult
    file_digests: tuple[str, ...] = ()

    @property
    def transaction_id(self) -> str:
        return self.anchor.transaction_id


@dataclass(frozen=True)
class RetrievalResult:
    bundle: RecordBundle
    ledger: LedgerRecovery | None
    ledger_error: str | None = None

    @property
    def ledger_consistent(self) -> bool | None:
        """Whether the on-chain envelope carries the digest stored locally."""
        if self.ledger is None or self.ledger.envelope is None:
            return None
        return self.ledger.envelope.hash == self.bundle.record.anchored_digest


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    stored_digest: str
    current_digest: str
    method: VerificationMethod
    record_id: int
    transaction_id: str
    ledger_match: bool | None = None
    log_id: int | None = None

    @property
    def is_valid(self) -> bool:
        return self.outcome == VerificationOutcome.VERIFIED


def claim_from_record(
    record: ProvenanceRecord,
    claim: ProvenanceClaim,
) -> ProvenanceClaim:
    """Carry the stored hashing context (``recorded_at``, schema) over to a fresh claim."""
    payload = record.anchored_payload or {}
    return ProvenanceClaim(
        producer_id=claim.producer_id,
        product=claim.product,
        location=claim.location,
        event_date=claim.event_date,
        quantity=claim.quantity,
        quality=claim.quality,
        notes=claim.notes,
        recorded_at=payload.get("recorded_at"),
        schema_version=payload.get("schema_version") or claim.schema_version,
    )


class ProvenanceCoordinator:
    """Request-scoped orchestration over a store and a shared ledger service."""

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerAnchorService,
        *,
        hash_engine: HashEngine | None = None,
        attachment_storage: AttachmentStorage | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._hash_engine = hash_engine or HashEngine()
        self._settings = settings or get_settings()
        self._storage = attachment_storage or AttachmentStorage(self._settings.upload_dir)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def _validate_uploads(self, files: Sequence[FileUpload] | None) -> None:
        validate_uploads(
            files,
            max_files=self._settings.attachments_max_files,
            max_bytes=self._settings.attachments_max_upload_bytes,
            allowed_types=self._settings.attachments_allowed_mime_types,
        ).raise_for_errors("Attachments are not valid")

    async def store(
        self,
        claim: ProvenanceClaim,
        files: Sequence[FileUpload] | None = None,
        *,
        producer_info: ProducerInfo | None = None,
        caller: CallerContext | None = None,
    ) -> StoreResult:
        """Hash, anchor and persist a claim with its attachments."""
        files = list(files or [])
        validate_claim(claim).raise_for_errors("Claim is not valid")
        validate_producer_info(producer_info).raise_for_errors("Producer details are not valid")
        self._validate_uploads(files)

        stamped = self._hash_engine.stamp(claim)
        payload = self._hash_engine.canonical_payload(stamped)
        digests = self._hash_engine.digest_combined(stamped, files)

        await self._store.ensure_producer_exists(payload["producer_id"], producer_info)

        try:
            anchor = await self._ledger.anchor(
                digests.anchored_digest,
                {
                    "producerId": payload["producer_id"],
                    "product": payload["product"],
                    "eventDate": payload["event_date"],
                    "dataHash": digests.record_digest,
                    "fileCount": len(files),
                    "schemaVersion": payload["schema_version"],
                },
            )
        except ConfirmationTimeoutError as exc:
            await self._keep_pending_anchor(exc, caller=caller)
            raise

        stored_files: list[StoredFile] = []
        try:
            stored_files = await self._storage.save_all(payload["producer_id"], files)
            record = await self._store.persist_record(
                self._draft(stamped, payload, digests),
                anchor,
                [
                    AttachmentDraft(position=index, stored=stored, sha256=sha256)
                    for index, (stored, sha256) in enumerate(
                        zip(stored_files, digests.file_digests, strict=True)
                    )
                ],
                caller=caller,
            )
            await self._store.commit()
        except Exception:
            logger.error(
                "anchor_orphaned",
                transaction_id=anchor.transaction_id,
                digest=digests.anchored_digest,
                producer_id=payload["producer_id"],
                exc_info=True,
            )
            await self._storage.remove(item.storage_path for item in stored_files)
            raise

        logger.info(
            "record_stored",
            record_id=record.id,
            digest=short_hex(digests.anchored_digest),
            transaction_id=anchor.transaction_id,
        )
        return StoreResult(
            record_id=record.id,
            data_digest=digests.record_digest,
            combined_digest=digests.combined_digest,
            anchored_digest=digests.anchored_digest,
            anchor=anchor,
            file_digests=digests.file_digests,
        )

    async def _keep_pending_anchor(
        self,
        exc: ConfirmationTimeoutError,
        *,
        caller: CallerContext | None,
    ) -> None:
        try:
            await self._store.record_pending_anchor(
                exc.transaction_id,
                network_name=self._ledger.network_name,
                from_address=self._ledger.signer_address,
                envelope=exc.envelope,
                chain_id=await self._ledger.chain_id(),
                caller=caller,
            )
            await self._store.commit()
        except ProvenanceError:
            logger.error(
                "pending_anchor_persist_failed",
                transaction_id=exc.transaction_id,
                exc_info=True,
            )
            return
        logger.warning("anchor_pending", transaction_id=exc.transaction_id)

    def _draft(
        self,
        claim: ProvenanceClaim,
        payload: dict[str, Any],
        digests: CombinedDigest,
    ) -> RecordDraft:
        quantity = payload["quantity"]
        return RecordDraft(
            producer_id=payload["producer_id"],
            product=payload["product"],
            location=payload["location"],
            event_date=payload["event_date"],
            quantity=Decimal(quantity) if quantity is not None else None,
            quality=payload["quality"],
            notes=claim.notes,
            data_digest=digests.record_digest,
            combined_digest=digests.combined_digest,
            anchored_payload=payload,
        )

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        identifier: str | int,
        by: LookupField = LookupField.AUTO,
        *,
        check_ledger: bool = True,
    ) -> RetrievalResult:
        """Load a record; a failing ledger lookup degrades the result instead of failing it."""
        bundle = await self._store.load_record(identifier, by)
        if not check_ledger:
            return RetrievalResult(bundle=bundle, ledger=None)

        transaction_id = bundle.record.transaction_id
        try:
            recovery = await self._ledger.recover(transaction_id)
        except ProvenanceError as exc:
            logger.warning(
                "ledger_lookup_degraded",
                record_id=bundle.record.id,
                transaction_id=transaction_id,
                error_code=exc.code,
            )
            return RetrievalResult(bundle=bundle, ledger=None, ledger_error=exc.message)
        return RetrievalResult(bundle=bundle, ledger=recovery)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        identifier: str | int,
        claim: ProvenanceClaim,
        files: Sequence[FileUpload] | None = None,
        *,
        by: LookupField = LookupField.AUTO,
        check_ledger: bool = False,
        caller: CallerContext | None = None,
    ) -> VerificationResult:
        """
        Recompute the digest of ``claim`` and compare it with the stored one.

        A mismatch is an outcome, not an error. Every call appends one
        verification log row. With ``check_ledger`` the on-chain envelope is
        compared too; an unreachable ledger leaves ``ledger_match`` unset and the
        local verdict stands.
        """
        files = list(files or [])
        validate_claim(claim).raise_for_errors("Claim is not valid")
        self._validate_uploads(files)

        bundle = await self._store.load_record(identifier, by)
        record = bundle.record
        candidate = claim_from_record(record, claim)
        if not candidate.recorded_at:
            raise ValidationError(
                "Stored record has no hashing timestamp",
                details={"record_id": record.id},
            )

        if files:
            digests = self._hash_engine.digest_combined(candidate, files)
            current_digest = digests.anchored_digest
            stored_digest = record.anchored_digest
            method = VerificationMethod.COMBINED_HASH
        else:
            current_digest = self._hash_engine.digest(candidate)
            stored_digest = record.data_digest
            method = VerificationMethod.DATA_ONLY

        matches = current_digest == stored_digest
        ledger_match: bool | None = None
        details: dict[str, Any] = {"file_count": len(files)}

        if check_ledger:
            method = VerificationMethod.BLOCKCHAIN_VERIFY
            try:
                recovery = await self._ledger.recover(record.transaction_id)
            except ProvenanceError as exc:
                logger.warning(
                    "verification_ledger_unavailable",
                    record_id=record.id,
                    transaction_id=record.transaction_id,
                    error_code=exc.code,
                )
                details["ledger_error"] = exc.code
            else:
                if recovery.envelope is not None:
                    ledger_match = recovery.envelope.hash == record.anchored_digest
                    details["ledger_digest"] = recovery.envelope.hash
                else:
                    details["ledger_error"] = "ENVELOPE_UNDECODABLE"
            if ledger_match is False:
                matches = False

        outcome = VerificationOutcome.VERIFIED if matches else VerificationOutcome.TAMPERED
        details["ledger_match"] = ledger_match

        entry = await self._store.log_verification(
            record_id=record.id,
            transaction_id=record.transaction_id,
            method=method,
            is_valid=matches,
            stored_digest=stored_digest,
            current_digest=current_digest,
            caller=caller,
            details=details,
        )
        try:
            await self._store.commit()
        except PersistenceError:
            logger.warning(
                "verification_log_commit_failed",
                record_id=record.id,
                method=method.value,
                exc_info=True,
            )
            entry = None

        logger.info(
            "record_verified",
            record_id=record.id,
            outcome=outcome.value,
            method=method.value,
            ledger_match=ledger_match,
        )
        return VerificationResult(
            outcome=outcome,
            stored_digest=stored_digest,
            current_digest=current_digest,
            method=method,
            record_id=record.id,
            transaction_id=record.transaction_id,
            ledger_match=ledger_match,
            log_id=entry.id if entry is not None else None,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reconfirm_anchor(
        self,
        transaction_id: str,
        *,
        caller: CallerContext | None = None,
    ) -> LedgerAnchor:
        """Observe the ledger state of a locally recorded anchor and apply it."""
        recovery = await self._ledger.recover(transaction_id)
        anchor = await self._store.update_anchor_status(
            recovery.transaction_id,
            recovery.status,
            block_number=recovery.block_number,
            block_hash=recovery.block_hash,
            caller=caller,
        )
        await self._store.commit()
        return anchor

    async def update_status(
        self,
        record_id: int,
        status: RecordStatus,
        *,
        notes: str | None = UNSET,
        caller: CallerContext | None = None,
    ) -> ProvenanceRecord:
        record = await self._store.update_record_status(
            record_id, status, notes=notes, caller=caller
        )
        await self._store.commit()
        return record

    async def deactivate_attachment(
        self,
        record_id: int,
        attachment_id: int,
        *,
        caller: CallerContext | None = None,
    ) -> FileAttachment:
        attachment = await self._store.deactivate_attachment(
            record_id, attachment_id, caller=caller
        )
        await self._store.commit()
        return attachment

    async def restore_attachment(
        self,
        record_id: int,
        attachment_id: int,
        *,
        caller: CallerContext | None = None,
    ) -> FileAttachment:
        attachment = await self._store.restore_attachment(record_id, attachment_id, caller=caller)
        await self._store.commit()
        return attachment

    async def verification_statistics(self, record_id: int | None = None) -> VerificationStatistics:
        return await self._store.verification_statistics(record_id)

    async def attachment_statistics(self) -> AttachmentStatistics:
        return await self._store.attachment_statistics()

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def compute_digest(self, claim: ProvenanceClaim) -> tuple[str, dict[str, Any]]:
        """Digest a claim without anchoring or storing it; returns the digest and its payload."""
        validate_claim(claim).raise_for_errors("Claim is not valid")
        payload = self._hash_engine.canonical_payload(self._hash_engine.stamp(claim))
        return self._hash_engine.digest_payload(payload), payload

