"""
SQLAlchemy ORM models for the provenance store.

Models are portable between PostgreSQL (production, asyncpg) and SQLite
(tests, aiosqlite): JSON columns switch to JSONB on PostgreSQL and integer
primary keys are BIGINT on PostgreSQL and INTEGER on SQLite so that rowid
autoincrement keeps working there.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

IdType = BigInteger().with_variant(Integer(), "sqlite")
JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JsonType,
    }


# =============================================================================
# Enums
# =============================================================================


class RecordStatus(str, PyEnum):
    """Lifecycle status of a provenance record."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AnchorStatus(str, PyEnum):
    """Confirmation status of a ledger anchor."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REVERTED = "reverted"


class VerificationMethod(str, PyEnum):
    """How a verification request was evaluated."""

    DATA_ONLY = "data_only"
    COMBINED_HASH = "combined_hash"
    BLOCKCHAIN_VERIFY = "blockchain_verify"


# =============================================================================
# Producers
# =============================================================================


class Producer(Base):
    """
    Party that submits provenance records.

    Rows are created implicitly the first time a producer id is seen and are
    never overwritten by later submissions.
    """

    __tablename__ = "producers"

    producer_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(100))
    phone: Mapped[str | None] = mapped_column(String(20))
    address: Mapped[str | None] = mapped_column(Text)
    province: Mapped[str | None] = mapped_column(String(50))
    district: Mapped[str | None] = mapped_column(String(50))
    ward: Mapped[str | None] = mapped_column(String(50))
    certification_level: Mapped[str | None] = mapped_column(String(50))
    wallet_address: Mapped[str | None] = mapped_column(String(42))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    records: Mapped[list["ProvenanceRecord"]] = relationship(back_populates="producer")


# =============================================================================
# Provenance records
# =============================================================================


class ProvenanceRecord(Base):
    """
    Local copy of a claim whose digest was anchored on the ledger.

    ``anchored_payload`` holds the exact canonical dict that was hashed, so a
    verification can recompute the digest with the original ``recorded_at``.
    """

    __tablename__ = "provenance_records"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    producer_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("producers.producer_id"),
        nullable=False,
    )
    product: Mapped[str] = mapped_column(String(100), nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    event_date: Mapped[str] = mapped_column(String(40), nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 3))
    quality: Mapped[str] = mapped_column(String(50), default="Standard", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    data_digest: Mapped[str] = mapped_column(String(66), nullable=False)
    combined_digest: Mapped[str | None] = mapped_column(String(66))
    transaction_id: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int | None] = mapped_column(IdType)
    anchored_payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_file_size: Mapped[int] = mapped_column(IdType, default=0, nullable=False)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=lambda e: [m.value for m in e]),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    producer: Mapped["Producer"] = relationship(back_populates="records")
    attachments: Mapped[list["FileAttachment"]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="FileAttachment.position",
    )

    @property
    def anchored_digest(self) -> str:
        """Digest that was written to the ledger for this record."""
        return self.combined_digest or self.data_digest

    __table_args__ = (
        Index("ix_provenance_records_producer_id", "producer_id"),
        Index("ix_provenance_records_data_digest", "data_digest"),
        Index("ix_provenance_records_combined_digest", "combined_digest"),
        Index("ix_provenance_records_transaction_id", "transaction_id"),
        Index("ix_provenance_records_status", "status"),
        Index("ix_provenance_records_created_at", "created_at"),
    )


# =============================================================================
# Ledger anchors
# =============================================================================


class LedgerAnchor(Base):
    """Confirmation details of a transaction that carries an anchored digest."""

    __tablename__ = "ledger_anchors"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    record_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("provenance_records.id", ondelete="SET NULL"),
    )
    block_number: Mapped[int | None] = mapped_column(IdType)
    block_hash: Mapped[str | None] = mapped_column(String(66))
    from_address: Mapped[str | None] = mapped_column(String(42))
    to_address: Mapped[str | None] = mapped_column(String(42))
    gas_used: Mapped[int | None] = mapped_column(IdType)
    gas_price: Mapped[int | None] = mapped_column(Numeric(38, 0))
    transaction_fee: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 18),
        comment="Fee paid in ether",
    )
    network_name: Mapped[str] = mapped_column(String(50), nullable=False)
    chain_id: Mapped[int | None] = mapped_column(IdType)
    status: Mapped[AnchorStatus] = mapped_column(
        Enum(AnchorStatus, values_callable=lambda e: [m.value for m in e]),
        default=AnchorStatus.PENDING,
        nullable=False,
    )
    envelope: Mapped[dict[str, Any] | None] = mapped_column(JsonType)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_ledger_anchors_record_id", "record_id"),
        Index("ix_ledger_anchors_status", "status"),
    )


# =============================================================================
# File attachments
# =============================================================================


class FileAttachment(Base):
    """Supporting document bound to a record; its digest is part of the combined digest."""

    __tablename__ = "file_attachments"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("provenance_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Submission order; the combined digest depends on it",
    )
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    size_bytes: Mapped[int] = mapped_column(IdType, nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    sha256: Mapped[str] = mapped_column(String(66), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    record: Mapped["ProvenanceRecord"] = relationship(back_populates="attachments")

    __table_args__ = (
        Index("ix_file_attachments_record_id", "record_id"),
        Index("ix_file_attachments_sha256", "sha256"),
    )


# =============================================================================
# Verification log
# =============================================================================


class VerificationLog(Base):
    """Append-only record of one verification attempt."""

    __tablename__ = "verification_logs"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    record_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("provenance_records.id", ondelete="RESTRICT"),
    )
    transaction_id: Mapped[str | None] = mapped_column(String(66))
    method: Mapped[VerificationMethod] = mapped_column(
        Enum(VerificationMethod, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    stored_digest: Mapped[str | None] = mapped_column(String(66))
    current_digest: Mapped[str | None] = mapped_column(String(66))
    client_ip: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType)
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_verification_logs_record_id", "record_id"),
        Index("ix_verification_logs_transaction_id", "transaction_id"),
        Index("ix_verification_logs_verified_at", "verified_at"),
    )


@event.listens_for(VerificationLog, "before_update")
def _reject_verification_log_update(mapper: Any, connection: Any, target: VerificationLog) -> None:
    raise ValueError("verification_logs rows are append-only")


@event.listens_for(VerificationLog, "before_delete")
def _reject_verification_log_delete(mapper: Any, connection: Any, target: VerificationLog) -> None:
    raise ValueError("verification_logs rows are append-only")


# =============================================================================
# Audit
# =============================================================================


class AuditEvent(Base):
    """
    Audit log of state-changing operations.

    Records who changed what, for accountability and forensics.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    subject: Mapped[str | None] = mapped_column(
        String(255),
        comment="Actor identifier (NULL for anonymous and system events)",
    )
    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Action type: store_record, update_record_status, etc.",
    )
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255))
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonType)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_audit_events_action", "action"),
        Index("ix_audit_events_resource", "resource_type", "resource_id"),
        Index("ix_audit_events_created_at", "created_at"),
    )
