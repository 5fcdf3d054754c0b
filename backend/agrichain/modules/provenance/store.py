"""
Relational persistence for provenance records, anchors, attachments and
verification history.

The store works on the caller's ``AsyncSession`` and only flushes; the
coordinator commits the unit of work through ``commit()``. Record and
attachment rows are written atomically inside one SAVEPOINT; the anchor row
and the audit entries get their own SAVEPOINTs so that their failure never
rolls the record back.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from agrichain.core.audit import CallerContext, emit_audit_event
from agrichain.core.config import Settings, get_settings
from agrichain.core.crypto import is_valid_digest
from agrichain.core.errors import (
    AttachmentNotFoundError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from agrichain.core.logging import get_logger, short_hex
from agrichain.db.models import (
    AnchorStatus,
    FileAttachment,
    LedgerAnchor,
    Producer,
    ProvenanceRecord,
    RecordStatus,
    VerificationLog,
    VerificationMethod,
    utcnow,
)
from agrichain.modules.ledger.service import AnchorResult
from agrichain.modules.provenance.attachments import StoredFile
from agrichain.modules.provenance.claims import ProducerInfo

logger = get_logger(__name__)

# Allowed anchor status changes; terminal states only re-affirm themselves
ANCHOR_TRANSITIONS: dict[AnchorStatus, frozenset[AnchorStatus]] = {
    AnchorStatus.PENDING: frozenset(
        {
            AnchorStatus.PENDING,
            AnchorStatus.CONFIRMED,
            AnchorStatus.FAILED,
            AnchorStatus.REVERTED,
        }
    ),
    AnchorStatus.CONFIRMED: frozenset({AnchorStatus.CONFIRMED, AnchorStatus.REVERTED}),
    AnchorStatus.FAILED: frozenset({AnchorStatus.FAILED}),
    AnchorStatus.REVERTED: frozenset({AnchorStatus.REVERTED}),
}


class LookupField(str, Enum):
    AUTO = "auto"
    ID = "id"
    HASH = "hash"


class _Unset:
    pass


UNSET: Any = _Unset()


@dataclass(frozen=True)
class RecordDraft:
    """Field values of a record about to be persisted."""

    producer_id: str
    product: str
    location: str
    event_date: str
    quantity: Decimal | None
    quality: str
    notes: str | None
    data_digest: str
    combined_digest: str | None
    anchored_payload: dict[str, Any]
    status: RecordStatus = RecordStatus.ACTIVE


@dataclass(frozen=True)
class AttachmentDraft:
    position: int
    stored: StoredFile
    sha256: str


@dataclass
class RecordBundle:
    record: ProvenanceRecord
    producer: Producer | None
    anchor: LedgerAnchor | None
    attachments: list[FileAttachment] = field(default_factory=list)
    verification_history: list[VerificationLog] = field(default_factory=list)

    @property
    def active_attachments(self) -> list[FileAttachment]:
        return [item for item in self.attachments if item.is_active]


@dataclass(frozen=True)
class VerificationStatistics:
    total: int
    valid: int
    invalid: int
    distinct_records: int
    distinct_clients: int
    by_method: dict[str, int]
    first_verified_at: datetime | None
    last_verified_at: datetime | None

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.valid * 100.0 / self.total, 2)


@dataclass(frozen=True)
class AttachmentStatistics:
    total_files: int
    active_files: int
    total_bytes: int
    active_bytes: int
    records_with_files: int
    by_content_type: dict[str, int]

    @property
    def inactive_files(self) -> int:
        return self.total_files - self.active_files


class RecordStore:
    """Persistence operations over one session."""

    def __init__(self, session: AsyncSession, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()

    @property
    def session(self) -> AsyncSession:
        return self._session

    def _insert(self, model: type[Any]) -> Any:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise PersistenceError(f"Unsupported database dialect: {dialect}")

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def ensure_producer_exists(
        self,
        producer_id: str,
        info: ProducerInfo | None = None,
    ) -> Producer:
        """
        Create the producer row if it is missing; never overwrite an existing one.

        Uses a conflict-tolerant insert so concurrent first submissions for the
        same producer cannot race into a duplicate-key failure.
        """
        info = info or ProducerInfo()
        stmt = (
            self._insert(Producer)
            .values(
                producer_id=producer_id,
                full_name=info.full_name or f"Producer {producer_id}",
                email=info.email,
                phone=info.phone,
                address=info.address,
                province=info.province,
                district=info.district,
                ward=info.ward,
                certification_level=info.certification_level,
                wallet_address=info.wallet_address,
            )
            .on_conflict_do_nothing(index_elements=["producer_id"])
        )
        try:
            result = await self._session.execute(stmt)
            producer = await self._session.get(Producer, producer_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not provision producer", details={"producer_id": producer_id}
            ) from exc
        if producer is None:
            raise PersistenceError(
                "Producer row missing after provisioning", details={"producer_id": producer_id}
            )
        if result.rowcount:
            logger.info("producer_created", producer_id=producer_id)
        return producer

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def persist_record(
        self,
        draft: RecordDraft,
        anchor: AnchorResult,
        attachments: Sequence[AttachmentDraft] = (),
        *,
        caller: CallerContext | None = None,
    ) -> ProvenanceRecord:
        record = ProvenanceRecord(
            producer_id=draft.producer_id,
            product=draft.product,
            location=draft.location,
            event_date=draft.event_date,
            quantity=draft.quantity,
            quality=draft.quality,
            notes=draft.notes,
            data_digest=draft.data_digest,
            combined_digest=draft.combined_digest,
            transaction_id=anchor.transaction_id,
            block_number=anchor.block_number,
            anchored_payload=draft.anchored_payload,
            file_count=len(attachments),
            total_file_size=sum(item.stored.size_bytes for item in attachments),
            status=draft.status,
            version=1,
            attachments=[
                FileAttachment(
                    position=item.position,
                    original_name=item.stored.original_name,
                    stored_name=item.stored.stored_name,
                    storage_path=item.stored.storage_path,
                    size_bytes=item.stored.size_bytes,
                    content_type=item.stored.content_type,
                    sha256=item.sha256,
                    is_active=True,
                )
                for item in attachments
            ],
        )

        try:
            async with self._session.begin_nested():
                self._session.add(record)
                await self._session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "record_persist_failed",
                transaction_id=anchor.transaction_id,
                digest=short_hex(draft.data_digest),
                exc_info=True,
            )
            raise PersistenceError(
                "Could not persist provenance record",
                details={"transaction_id": anchor.transaction_id},
            ) from exc

        await self._insert_anchor(record.id, anchor)
        await emit_audit_event(
            db_session=self._session,
            action="store_record",
            resource_type="provenance_record",
            resource_id=record.id,
            caller=caller,
            metadata={
                "producer_id": record.producer_id,
                "transaction_id": anchor.transaction_id,
                "file_count": record.file_count,
            },
        )
        logger.info(
            "record_persisted",
            record_id=record.id,
            transaction_id=anchor.transaction_id,
            file_count=record.file_count,
        )
        return record

    async def _insert_anchor(self, record_id: int, anchor: AnchorResult) -> None:
        stmt = (
            self._insert(LedgerAnchor)
            .values(
                transaction_id=anchor.transaction_id,
                record_id=record_id,
                block_number=anchor.block_number,
                block_hash=anchor.block_hash,
                from_address=anchor.from_address,
                to_address=anchor.to_address,
                gas_used=anchor.gas_used,
                gas_price=anchor.gas_price,
                transaction_fee=anchor.transaction_fee,
                network_name=anchor.network_name,
                chain_id=anchor.chain_id,
                status=anchor.status,
                envelope=anchor.envelope.to_dict(),
                confirmed_at=anchor.confirmed_at,
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
        try:
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
        except SQLAlchemyError:
            logger.warning(
                "anchor_row_insert_failed",
                transaction_id=anchor.transaction_id,
                record_id=record_id,
                exc_info=True,
            )
            return
        if not result.rowcount:
            logger.info("anchor_row_exists", transaction_id=anchor.transaction_id)

    async def load_record(
        self,
        identifier: str | int,
        by: LookupField = LookupField.AUTO,
    ) -> RecordBundle:
        """Load a record by numeric id, or by data digest, combined digest or transaction id."""
        stmt = self._record_query(identifier, by)
        try:
            result = await self._session.execute(stmt)
            record = result.scalars().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load provenance record") from exc
        if record is None:
            raise RecordNotFoundError(
                f"No provenance record matches {identifier}",
                details={"identifier": str(identifier)},
            )

        try:
            producer = await self._session.get(Producer, record.producer_id)
            anchor = await self._anchor_for(record.transaction_id)
            history = await self.verification_history(record.id)
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load provenance record") from exc

        return RecordBundle(
            record=record,
            producer=producer,
            anchor=anchor,
            attachments=list(record.attachments),
            verification_history=history,
        )

    def _record_query(self, identifier: str | int, by: LookupField) -> Select[Any]:
        base = select(ProvenanceRecord).options(
            selectinload(ProvenanceRecord.attachments),
        )
        text = str(identifier).strip()

        if by == LookupField.ID or (by == LookupField.AUTO and text.isdigit()):
            if not text.isdigit():
                raise ValidationError("Record id must be numeric", details={"identifier": text})
            return base.where(ProvenanceRecord.id == int(text))

        lowered = text.lower()
        if by in (LookupField.HASH, LookupField.AUTO) and is_valid_digest(lowered):
            return (
                base.where(
                    or_(
                        ProvenanceRecord.data_digest == lowered,
                        ProvenanceRecord.combined_digest == lowered,
                        ProvenanceRecord.transaction_id == lowered,
                    )
                )
                .order_by(ProvenanceRecord.id.asc())
                .limit(1)
            )

        raise ValidationError(
            "Identifier must be a numeric id or a 0x-prefixed 64 hex character digest",
            details={"identifier": text, "by": by.value},
        )

    async def _anchor_for(self, transaction_id: str) -> LedgerAnchor | None:
        result = await self._session.execute(
            select(LedgerAnchor).where(LedgerAnchor.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def update_record_status(
        self,
        record_id: int,
        status: RecordStatus,
        *,
        notes: str | None = UNSET,
        caller: CallerContext | None = None,
    ) -> ProvenanceRecord:
        """Change mutable fields; digests and the anchored payload are never touched."""
        record = await self._session.get(ProvenanceRecord, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"No provenance record with id {record_id}", details={"record_id": record_id}
            )
        previous = record.status
        record.status = status
        if notes is not UNSET:
            record.notes = notes
        record.version = record.version + 1
        try:
            await self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not update record status") from exc

        await emit_audit_event(
            db_session=self._session,
            action="update_record_status",
            resource_type="provenance_record",
            resource_id=record.id,
            caller=caller,
            metadata={"from": previous.value, "to": status.value, "version": record.version},
        )
        return record

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def _get_attachment(self, record_id: int, attachment_id: int) -> FileAttachment:
        result = await self._session.execute(
            select(FileAttachment).where(
                FileAttachment.id == attachment_id,
                FileAttachment.record_id == record_id,
            )
        )
        attachment = result.scalar_one_or_none()
        if attachment is None:
            raise AttachmentNotFoundError(
                "Attachment not found",
                details={"record_id": record_id, "attachment_id": attachment_id},
            )
        return attachment

    async def deactivate_attachment(
        self,
        record_id: int,
        attachment_id: int,
        *,
        caller: CallerContext | None = None,
    ) -> FileAttachment:
        attachment = await self._get_attachment(record_id, attachment_id)
        if attachment.is_active:
            attachment.is_active = False
            attachment.deleted_at = utcnow()
            await self._session.flush()
            await emit_audit_event(
                db_session=self._session,
                action="deactivate_attachment",
                resource_type="file_attachment",
                resource_id=attachment.id,
                caller=caller,
                metadata={"record_id": record_id},
            )
        return attachment

    async def restore_attachment(
        self,
        record_id: int,
        attachment_id: int,
        *,
        caller: CallerContext | None = None,
    ) -> FileAttachment:
        attachment = await self._get_attachment(record_id, attachment_id)
        if not attachment.is_active:
            attachment.is_active = True
            attachment.deleted_at = None
            await self._session.flush()
            await emit_audit_event(
                db_session=self._session,
                action="restore_attachment",
                resource_type="file_attachment",
                resource_id=attachment.id,
                caller=caller,
                metadata={"record_id": record_id},
            )
        return attachment

    async def attachment_statistics(self) -> AttachmentStatistics:
        """Counts and sizes over every stored attachment, active or not."""
        stmt = select(
            FileAttachment.record_id,
            FileAttachment.size_bytes,
            FileAttachment.content_type,
            FileAttachment.is_active,
        )
        try:
            rows = (await self._session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load attachment statistics") from exc

        active = [row for row in rows if row.is_active]
        return AttachmentStatistics(
            total_files=len(rows),
            active_files=len(active),
            total_bytes=sum(row.size_bytes for row in rows),
            active_bytes=sum(row.size_bytes for row in active),
            records_with_files=len({row.record_id for row in active}),
            by_content_type=dict(Counter(row.content_type for row in active)),
        )

    # ------------------------------------------------------------------
    # Anchors
    # ------------------------------------------------------------------

    async def update_anchor_status(
        self,
        transaction_id: str,
        status: AnchorStatus,
        *,
        block_number: int | None = None,
        block_hash: str | None = None,
        caller: CallerContext | None = None,
    ) -> LedgerAnchor:
        anchor = await self._anchor_for(transaction_id)
        if anchor is None:
            raise RecordNotFoundError(
                f"No local anchor for transaction {transaction_id}",
                details={"transaction_id": transaction_id},
            )
        previous = anchor.status
        if status not in ANCHOR_TRANSITIONS[previous]:
            raise ValidationError(
                f"Anchor status cannot change from {previous.value} to {status.value}",
                code="INVALID_STATUS_TRANSITION",
                details={"transaction_id": transaction_id},
            )

        anchor.status = status
        if block_number is not None:
            anchor.block_number = block_number
        if block_hash is not None:
            anchor.block_hash = block_hash
        if status == AnchorStatus.CONFIRMED:
            anchor.confirmed_at = utcnow()
        await self._session.flush()

        if previous != status:
            logger.info(
                "anchor_status_changed",
                transaction_id=transaction_id,
                previous=previous.value,
                status=status.value,
            )
        await emit_audit_event(
            db_session=self._session,
            action="update_anchor_status",
            resource_type="ledger_anchor",
            resource_id=transaction_id,
            caller=caller,
            metadata={"from": previous.value, "to": status.value},
        )
        return anchor

    async def record_pending_anchor(
        self,
        transaction_id: str,
        *,
        network_name: str,
        from_address: str | None,
        envelope: dict[str, Any] | None,
        chain_id: int | None = None,
        caller: CallerContext | None = None,
    ) -> bool:
        """
        Keep a submitted but unconfirmed anchor for later reconfirmation.

        The row has no record yet. Returns False when a row for the
        transaction already exists.
        """
        stmt = (
            self._insert(LedgerAnchor)
            .values(
                transaction_id=transaction_id,
                record_id=None,
                from_address=from_address,
                to_address=from_address,
                network_name=network_name,
                chain_id=chain_id,
                status=AnchorStatus.PENDING,
                envelope=envelope,
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
        try:
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not record pending anchor",
                details={"transaction_id": transaction_id},
            ) from exc
        if not result.rowcount:
            logger.info("anchor_row_exists", transaction_id=transaction_id)
            return False

        logger.info("pending_anchor_recorded", transaction_id=transaction_id)
        await emit_audit_event(
            db_session=self._session,
            action="record_pending_anchor",
            resource_type="ledger_anchor",
            resource_id=transaction_id,
            caller=caller,
            metadata={"network_name": network_name},
        )
        return True

    async def list_anchors(
        self,
        *,
        status: AnchorStatus | None = None,
        limit: int = 100,
    ) -> list[LedgerAnchor]:
        stmt = select(LedgerAnchor).order_by(LedgerAnchor.id.asc()).limit(limit)
        if status is not None:
            stmt = stmt.where(LedgerAnchor.status == status)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Verification log
    # ------------------------------------------------------------------

    async def log_verification(
        self,
        *,
        record_id: int | None,
        transaction_id: str | None,
        method: VerificationMethod,
        is_valid: bool,
        stored_digest: str | None,
        current_digest: str | None,
        caller: CallerContext | None = None,
        details: dict[str, Any] | None = None,
    ) -> VerificationLog | None:
        """
        Append one verification log row.

        A write failure is logged and swallowed: an audit-log outage never
        blocks the verification verdict.
        """
        entry = VerificationLog(
            record_id=record_id,
            transaction_id=transaction_id,
            method=method,
            is_valid=is_valid,
            stored_digest=stored_digest,
            current_digest=current_digest,
            client_ip=caller.ip_address if caller else None,
            user_agent=caller.user_agent if caller else None,
            details=details,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(entry)
                await self._session.flush()
        except SQLAlchemyError:
            logger.warning(
                "verification_log_write_failed",
                record_id=record_id,
                method=method.value,
                exc_info=True,
            )
            return None
        logger.info(
            "verification_logged",
            log_id=entry.id,
            record_id=record_id,
            method=method.value,
            is_valid=is_valid,
        )
        return entry

    async def verification_history(
        self,
        record_id: int,
        *,
        limit: int | None = None,
    ) -> list[VerificationLog]:
        result = await self._session.execute(
            select(VerificationLog)
            .where(VerificationLog.record_id == record_id)
            .order_by(VerificationLog.verified_at.desc(), VerificationLog.id.desc())
            .limit(limit or self._settings.verification_history_limit)
        )
        return list(result.scalars().all())

    async def verification_statistics(
        self,
        record_id: int | None = None,
    ) -> VerificationStatistics:
        stmt = select(
            VerificationLog.record_id,
            VerificationLog.method,
            VerificationLog.is_valid,
            VerificationLog.client_ip,
            VerificationLog.verified_at,
        )
        if record_id is not None:
            stmt = stmt.where(VerificationLog.record_id == record_id)
        try:
            rows = (await self._session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load verification statistics") from exc

        methods: Counter[str] = Counter(row.method.value for row in rows)
        timestamps = [row.verified_at for row in rows if row.verified_at is not None]
        valid = sum(1 for row in rows if row.is_valid)
        return VerificationStatistics(
            total=len(rows),
            valid=valid,
            invalid=len(rows) - valid,
            distinct_records=len({row.record_id for row in rows if row.record_id is not None}),
            distinct_clients=len({row.client_ip for row in rows if row.client_ip}),
            by_method=dict(methods),
            first_verified_at=min(timestamps) if timestamps else None,
            last_verified_at=max(timestamps) if timestamps else None,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError("Could not commit changes") from exc
