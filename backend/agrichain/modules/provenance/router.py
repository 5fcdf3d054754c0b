"""Provenance endpoints: store, retrieve and verify records."""

from __future__ import annotations

from typing import TypeVar

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile, status
from pydantic import ValidationError as PydanticValidationError

from agrichain.core.config import get_settings
from agrichain.core.errors import ProvenanceError, to_http_exception
from agrichain.core.logging import get_logger
from agrichain.modules.ledger.schemas import EnvelopeResponse, LedgerRecoveryResponse
from agrichain.modules.provenance.attachments import read_upload
from agrichain.modules.provenance.claims import FileUpload
from agrichain.modules.provenance.dependencies import Caller, Coordinator
from agrichain.modules.provenance.schemas import (
    AnchorResponse,
    AttachmentResponse,
    AttachmentStatisticsResponse,
    ClaimRequest,
    DigestResponse,
    ProducerResponse,
    RecordResponse,
    RetrievalResponse,
    StatusUpdateRequest,
    StoredAnchorResponse,
    StoreRecordRequest,
    StoreRecordResponse,
    VerificationLogResponse,
    VerificationResponse,
    VerificationStatisticsResponse,
    VerifyRecordRequest,
)
from agrichain.modules.provenance.service import (
    RetrievalResult,
    StoreResult,
    VerificationResult,
)
from agrichain.modules.provenance.store import LookupField

logger = get_logger(__name__)
router = APIRouter()

RequestT = TypeVar("RequestT", StoreRecordRequest, VerifyRecordRequest)


def _store_response(result: StoreResult) -> StoreRecordResponse:
    anchor = result.anchor
    return StoreRecordResponse(
        record_id=result.record_id,
        data_digest=result.data_digest,
        combined_digest=result.combined_digest,
        anchored_digest=result.anchored_digest,
        file_digests=list(result.file_digests),
        anchor=AnchorResponse(
            transaction_id=anchor.transaction_id,
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
            confirmed_at=anchor.confirmed_at,
        ),
        envelope=EnvelopeResponse.from_envelope(anchor.envelope),
    )


def _retrieval_response(result: RetrievalResult) -> RetrievalResponse:
    bundle = result.bundle
    return RetrievalResponse(
        record=RecordResponse.model_validate(bundle.record),
        producer=(
            ProducerResponse.model_validate(bundle.producer) if bundle.producer else None
        ),
        anchor=StoredAnchorResponse.model_validate(bundle.anchor) if bundle.anchor else None,
        attachments=[AttachmentResponse.model_validate(item) for item in bundle.attachments],
        verification_history=[
            VerificationLogResponse.model_validate(entry)
            for entry in bundle.verification_history
        ],
        ledger=LedgerRecoveryResponse.from_recovery(result.ledger) if result.ledger else None,
        ledger_error=result.ledger_error,
        ledger_consistent=result.ledger_consistent,
    )


def _verification_response(result: VerificationResult) -> VerificationResponse:
    return VerificationResponse(
        outcome=result.outcome.value,
        is_valid=result.is_valid,
        stored_digest=result.stored_digest,
        current_digest=result.current_digest,
        method=result.method,
        record_id=result.record_id,
        transaction_id=result.transaction_id,
        ledger_match=result.ledger_match,
        log_id=result.log_id,
    )


async def _read_uploads(files: list[UploadFile]) -> list[FileUpload]:
    max_bytes = get_settings().attachments_max_upload_bytes
    try:
        return [await read_upload(item, max_bytes=max_bytes) for item in files]
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc


def _parse_payload(model: type[RequestT], payload: str) -> RequestT:
    try:
        return model.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@router.post(
    "/records",
    response_model=StoreRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def store_record(
    body: StoreRecordRequest,
    coordinator: Coordinator,
    caller: Caller,
) -> StoreRecordResponse:
    """Hash a claim, anchor its digest on the ledger and persist the record."""
    try:
        result = await coordinator.store(
            body.to_claim(),
            producer_info=body.producer.to_info() if body.producer else None,
            caller=caller,
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return _store_response(result)


@router.post(
    "/records/upload",
    response_model=StoreRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def store_record_with_files(
    coordinator: Coordinator,
    caller: Caller,
    payload: str = Form(..., description="StoreRecordRequest as JSON"),
    files: list[UploadFile] = File(default=[]),
) -> StoreRecordResponse:
    """Store a claim together with supporting documents bound by a combined digest."""
    body = _parse_payload(StoreRecordRequest, payload)
    uploads = await _read_uploads(files)
    try:
        result = await coordinator.store(
            body.to_claim(),
            uploads,
            producer_info=body.producer.to_info() if body.producer else None,
            caller=caller,
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return _store_response(result)


# ---------------------------------------------------------------------------
# Retrieve
# ---------------------------------------------------------------------------


@router.get("/records/{identifier}", response_model=RetrievalResponse)
async def get_record(
    identifier: str,
    coordinator: Coordinator,
    by: LookupField = Query(LookupField.AUTO, description="Lookup field for the identifier"),
    check_ledger: bool = Query(True, description="Recover the ledger transaction as well"),
) -> RetrievalResponse:
    """Retrieve a record by numeric id, digest or transaction id."""
    try:
        result = await coordinator.retrieve(identifier, by, check_ledger=check_ledger)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return _retrieval_response(result)


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@router.post("/records/{identifier}/verify", response_model=VerificationResponse)
async def verify_record(
    identifier: str,
    body: VerifyRecordRequest,
    coordinator: Coordinator,
    caller: Caller,
    by: LookupField = Query(LookupField.AUTO),
) -> VerificationResponse:
    """Recompute the digest of the submitted claim and compare it with the stored one."""
    try:
        result = await coordinator.verify(
            identifier,
            body.to_claim(),
            by=by,
            check_ledger=body.check_ledger,
            caller=caller,
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return _verification_response(result)


@router.post("/records/{identifier}/verify/upload", response_model=VerificationResponse)
async def verify_record_with_files(
    identifier: str,
    coordinator: Coordinator,
    caller: Caller,
    payload: str = Form(..., description="VerifyRecordRequest as JSON"),
    files: list[UploadFile] = File(default=[]),
    by: LookupField = Query(LookupField.AUTO),
) -> VerificationResponse:
    """Verify a claim together with its attachments against the combined digest."""
    body = _parse_payload(VerifyRecordRequest, payload)
    uploads = await _read_uploads(files)
    try:
        result = await coordinator.verify(
            identifier,
            body.to_claim(),
            uploads,
            by=by,
            check_ledger=body.check_ledger,
            caller=caller,
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return _verification_response(result)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@router.patch("/records/{record_id}/status", response_model=RecordResponse)
async def update_record_status(
    record_id: int,
    body: StatusUpdateRequest,
    coordinator: Coordinator,
    caller: Caller,
) -> RecordResponse:
    """Change the lifecycle status (and optionally notes) of a record."""
    kwargs = {"notes": body.notes} if "notes" in body.model_fields_set else {}
    try:
        record = await coordinator.update_status(record_id, body.status, caller=caller, **kwargs)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return RecordResponse.model_validate(record)


@router.delete(
    "/records/{record_id}/attachments/{attachment_id}",
    response_model=AttachmentResponse,
)
async def deactivate_attachment(
    record_id: int,
    attachment_id: int,
    coordinator: Coordinator,
    caller: Caller,
) -> AttachmentResponse:
    """Soft-delete an attachment; its digest stays part of the combined digest."""
    try:
        attachment = await coordinator.deactivate_attachment(
            record_id, attachment_id, caller=caller
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return AttachmentResponse.model_validate(attachment)


@router.post(
    "/records/{record_id}/attachments/{attachment_id}/restore",
    response_model=AttachmentResponse,
)
async def restore_attachment(
    record_id: int,
    attachment_id: int,
    coordinator: Coordinator,
    caller: Caller,
) -> AttachmentResponse:
    try:
        attachment = await coordinator.restore_attachment(
            record_id, attachment_id, caller=caller
        )
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return AttachmentResponse.model_validate(attachment)


@router.get("/verifications/statistics", response_model=VerificationStatisticsResponse)
async def verification_statistics(
    coordinator: Coordinator,
    record_id: int | None = Query(None, description="Restrict to one record"),
) -> VerificationStatisticsResponse:
    try:
        stats = await coordinator.verification_statistics(record_id)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return VerificationStatisticsResponse(
        total=stats.total,
        valid=stats.valid,
        invalid=stats.invalid,
        success_rate=stats.success_rate,
        distinct_records=stats.distinct_records,
        distinct_clients=stats.distinct_clients,
        by_method=stats.by_method,
        first_verified_at=stats.first_verified_at,
        last_verified_at=stats.last_verified_at,
    )


@router.get("/attachments/statistics", response_model=AttachmentStatisticsResponse)
async def attachment_statistics(coordinator: Coordinator) -> AttachmentStatisticsResponse:
    """Configured upload limits together with totals over stored attachments."""
    try:
        stats = await coordinator.attachment_statistics()
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    settings = get_settings()
    return AttachmentStatisticsResponse(
        max_file_size_bytes=settings.attachments_max_upload_bytes,
        max_files=settings.attachments_max_files,
        allowed_mime_types=settings.attachments_allowed_mime_types,
        total_files=stats.total_files,
        active_files=stats.active_files,
        inactive_files=stats.inactive_files,
        total_bytes=stats.total_bytes,
        active_bytes=stats.active_bytes,
        records_with_files=stats.records_with_files,
        by_content_type=stats.by_content_type,
    )


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


@router.post("/hash", response_model=DigestResponse)
async def hash_claim(body: ClaimRequest, coordinator: Coordinator) -> DigestResponse:
    """Return the digest a claim would be anchored with, without anchoring it."""
    try:
        digest, payload = coordinator.compute_digest(body.to_claim())
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return DigestResponse(digest=digest, payload=payload)
