"""Pydantic schemas for provenance API requests and responses."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agrichain.db.models import AnchorStatus, RecordStatus, VerificationMethod
from agrichain.modules.ledger.schemas import EnvelopeResponse, LedgerRecoveryResponse
from agrichain.modules.provenance.claims import ProducerInfo, ProvenanceClaim


class ProducerInfoRequest(BaseModel):
    """Producer profile used only when the producer does not exist yet."""

    full_name: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=20)
    address: str | None = None
    province: str | None = Field(default=None, max_length=50)
    district: str | None = Field(default=None, max_length=50)
    ward: str | None = Field(default=None, max_length=50)
    certification_level: str | None = Field(default="Standard", max_length=50)
    wallet_address: str | None = Field(default=None, max_length=42)

    def to_info(self) -> ProducerInfo:
        return ProducerInfo(**self.model_dump())


class ClaimRequest(BaseModel):
    """Hashed fields of a provenance claim."""

    producer_id: str = Field(..., min_length=1, max_length=50)
    product: str = Field(..., min_length=1, max_length=100)
    location: str = Field(..., min_length=1, max_length=200)
    event_date: str = Field(..., description="ISO-8601 date or date-time")
    quantity: Decimal | None = Field(default=None, ge=0)
    quality: str = Field(default="Standard", min_length=1, max_length=50)
    notes: str | None = None

    def to_claim(self) -> ProvenanceClaim:
        return ProvenanceClaim(
            producer_id=self.producer_id,
            product=self.product,
            location=self.location,
            event_date=self.event_date,
            quantity=self.quantity,
            quality=self.quality,
            notes=self.notes,
        )


class StoreRecordRequest(ClaimRequest):
    producer: ProducerInfoRequest | None = None


class VerifyRecordRequest(ClaimRequest):
    check_ledger: bool = Field(
        default=False,
        description="Also compare the digest carried by the ledger transaction",
    )


class StatusUpdateRequest(BaseModel):
    status: RecordStatus
    notes: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AnchorResponse(BaseModel):
    transaction_id: str
    block_number: int | None = None
    block_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    gas_used: int | None = None
    gas_price: int | None = None
    transaction_fee: Decimal | None = None
    network_name: str
    chain_id: int | None = None
    status: AnchorStatus
    confirmed_at: datetime | None = None


class StoredAnchorResponse(AnchorResponse):
    model_config = ConfigDict(from_attributes=True)

    envelope: dict[str, Any] | None = None
    submitted_at: datetime | None = None


class StoreRecordResponse(BaseModel):
    record_id: int
    data_digest: str
    combined_digest: str | None = None
    anchored_digest: str
    file_digests: list[str] = Field(default_factory=list)
    anchor: AnchorResponse
    envelope: EnvelopeResponse


class ProducerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    producer_id: str
    full_name: str
    email: str | None = None
    phone: str | None = None
    province: str | None = None
    certification_level: str | None = None


class AttachmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position: int
    original_name: str
    size_bytes: int
    content_type: str
    sha256: str
    is_active: bool
    deleted_at: datetime | None = None
    uploaded_at: datetime


class VerificationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    method: VerificationMethod
    is_valid: bool
    stored_digest: str | None = None
    current_digest: str | None = None
    client_ip: str | None = None
    verified_at: datetime


class RecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    producer_id: str
    product: str
    location: str
    event_date: str
    quantity: Decimal | None = None
    quality: str
    notes: str | None = None
    data_digest: str
    combined_digest: str | None = None
    transaction_id: str
    block_number: int | None = None
    file_count: int
    total_file_size: int
    status: RecordStatus
    version: int
    created_at: datetime
    updated_at: datetime


class RetrievalResponse(BaseModel):
    record: RecordResponse
    producer: ProducerResponse | None = None
    anchor: StoredAnchorResponse | None = None
    attachments: list[AttachmentResponse]
    verification_history: list[VerificationLogResponse]
    ledger: LedgerRecoveryResponse | None = None
    ledger_error: str | None = None
    ledger_consistent: bool | None = None


class VerificationResponse(BaseModel):
    outcome: str
    is_valid: bool
    stored_digest: str
    current_digest: str
    method: VerificationMethod
    record_id: int
    transaction_id: str
    ledger_match: bool | None = None
    log_id: int | None = None


class VerificationStatisticsResponse(BaseModel):
    total: int
    valid: int
    invalid: int
    success_rate: float
    distinct_records: int
    distinct_clients: int
    by_method: dict[str, int]
    first_verified_at: datetime | None = None
    last_verified_at: datetime | None = None


class DigestResponse(BaseModel):
    """Digest of a claim that was neither anchored nor stored."""

    digest: str
    payload: dict[str, Any]


class AttachmentStatisticsResponse(BaseModel):
    max_file_size_bytes: int
    max_files: int
    allowed_mime_types: list[str]
    total_files: int
    active_files: int
    inactive_files: int
    total_bytes: int
    active_bytes: int
    records_with_files: int
    by_content_type: dict[str, int]
