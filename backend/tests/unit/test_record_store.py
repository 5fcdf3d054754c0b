"""Tests for the relational record store on SQLite."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agrichain.core.audit import CallerContext
from agrichain.core.errors import (
    AttachmentNotFoundError,
    RecordNotFoundError,
    ValidationError,
)
from agrichain.db.models import (
    AnchorStatus,
    AuditEvent,
    LedgerAnchor,
    ProvenanceRecord,
    RecordStatus,
    VerificationLog,
    VerificationMethod,
)
from agrichain.modules.ledger.codec import build_envelope
from agrichain.modules.ledger.service import AnchorResult
from agrichain.modules.provenance.attachments import StoredFile
from agrichain.modules.provenance.claims import ProducerInfo
from agrichain.modules.provenance.store import (
    AttachmentDraft,
    LookupField,
    RecordDraft,
    RecordStore,
)
from tests.tools.fake_ledger import SIGNER

DATA_DIGEST = "0x" + "11" * 32
COMBINED_DIGEST = "0x" + "22" * 32
TX_ID = "0x" + "33" * 32
FILE_DIGEST = "0x" + "44" * 32


def _make_draft(**overrides: object) -> RecordDraft:
    values: dict[str, object] = {
        "producer_id": "FARM001",
        "product": "Rice",
        "location": "Mekong Delta",
        "event_date": "2024-01-15",
        "quantity": Decimal("1000"),
        "quality": "Premium",
        "notes": None,
        "data_digest": DATA_DIGEST,
        "combined_digest": None,
        "anchored_payload": {"recorded_at": "2024-01-15T08:00:00.000Z", "schema_version": "1.0"},
    }
    values.update(overrides)
    return RecordDraft(**values)  # type: ignore[arg-type]


def _make_anchor(transaction_id: str = TX_ID, digest: str = DATA_DIGEST) -> AnchorResult:
    return AnchorResult(
        transaction_id=transaction_id,
        block_number=101,
        block_hash="0x" + "bb" * 32,
        from_address=SIGNER,
        to_address=SIGNER,
        gas_used=21_000,
        gas_price=30 * 10**9,
        fee_wei=21_000 * 30 * 10**9,
        network_name="amoy",
        chain_id=80002,
        status=AnchorStatus.CONFIRMED,
        envelope=build_envelope(digest, {"producerId": "FARM001"}),
    )


def _make_attachment(tmp_path: Path, position: int = 0) -> AttachmentDraft:
    return AttachmentDraft(
        position=position,
        stored=StoredFile(
            original_name=f"cert-{position}.pdf",
            stored_name=f"abc_cert-{position}.pdf",
            storage_path=str(tmp_path / f"abc_cert-{position}.pdf"),
            size_bytes=128,
            content_type="application/pdf",
        ),
        sha256=FILE_DIGEST,
    )


async def _persist(
    store: RecordStore,
    *,
    draft: RecordDraft | None = None,
    anchor: AnchorResult | None = None,
    attachments: list[AttachmentDraft] | None = None,
) -> int:
    draft = draft or _make_draft()
    await store.ensure_producer_exists(draft.producer_id)
    record = await store.persist_record(
        draft,
        anchor or _make_anchor(),
        attachments or [],
        caller=CallerContext(ip_address="10.0.0.1"),
    )
    await store.commit()
    return record.id


class TestProducers:
    @pytest.mark.asyncio
    async def test_creates_default_profile(self, record_store: RecordStore) -> None:
        producer = await record_store.ensure_producer_exists("FARM001")
        assert producer.full_name == "Producer FARM001"
        assert producer.is_active is True

    @pytest.mark.asyncio
    async def test_existing_producer_is_never_overwritten(
        self, record_store: RecordStore
    ) -> None:
        await record_store.ensure_producer_exists(
            "FARM001", ProducerInfo(full_name="Nguyen Van A", province="An Giang")
        )
        producer = await record_store.ensure_producer_exists(
            "FARM001", ProducerInfo(full_name="Someone Else")
        )
        assert producer.full_name == "Nguyen Van A"
        assert producer.province == "An Giang"


class TestPersistRecord:
    @pytest.mark.asyncio
    async def test_writes_record_anchor_attachments_and_audit(
        self, record_store: RecordStore, db_session: AsyncSession, tmp_path: Path
    ) -> None:
        record_id = await _persist(
            record_store,
            draft=_make_draft(combined_digest=COMBINED_DIGEST),
            anchor=_make_anchor(digest=COMBINED_DIGEST),
            attachments=[_make_attachment(tmp_path, 0), _make_attachment(tmp_path, 1)],
        )

        bundle = await record_store.load_record(record_id)
        assert bundle.record.transaction_id == TX_ID
        assert bundle.record.file_count == 2
        assert bundle.record.total_file_size == 256
        assert bundle.record.anchored_digest == COMBINED_DIGEST
        assert bundle.record.version == 1
        assert [item.position for item in bundle.attachments] == [0, 1]
        assert bundle.producer is not None
        assert bundle.producer.producer_id == "FARM001"

        assert bundle.anchor is not None
        assert bundle.anchor.record_id == record_id
        assert bundle.anchor.status == AnchorStatus.CONFIRMED
        assert bundle.anchor.envelope["hash"] == COMBINED_DIGEST
        assert bundle.anchor.transaction_fee == Decimal("0.00063")

        actions = (await db_session.execute(select(AuditEvent.action))).scalars().all()
        assert actions == ["store_record"]

    @pytest.mark.asyncio
    async def test_duplicate_anchor_row_is_tolerated(
        self, record_store: RecordStore, db_session: AsyncSession
    ) -> None:
        first = await _persist(record_store)
        second = await _persist(record_store)

        assert first != second
        count = await db_session.scalar(select(func.count()).select_from(LedgerAnchor))
        assert count == 1


class TestLoadRecord:
    @pytest.mark.asyncio
    async def test_lookup_by_every_identifier(self, record_store: RecordStore) -> None:
        record_id = await _persist(
            record_store,
            draft=_make_draft(combined_digest=COMBINED_DIGEST),
            anchor=_make_anchor(digest=COMBINED_DIGEST),
        )

        for identifier in (record_id, str(record_id), DATA_DIGEST, COMBINED_DIGEST, TX_ID):
            bundle = await record_store.load_record(identifier)
            assert bundle.record.id == record_id

    @pytest.mark.asyncio
    async def test_digest_lookup_is_case_insensitive(self, record_store: RecordStore) -> None:
        record_id = await _persist(record_store)
        bundle = await record_store.load_record("0x" + DATA_DIGEST[2:].upper(), LookupField.HASH)
        assert bundle.record.id == record_id

    @pytest.mark.asyncio
    async def test_missing_record(self, record_store: RecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await record_store.load_record(999)
        with pytest.raises(RecordNotFoundError):
            await record_store.load_record("0x" + "ff" * 32)

    @pytest.mark.parametrize(
        ("identifier", "by"),
        [
            ("not-an-id", LookupField.AUTO),
            ("0x1234", LookupField.AUTO),
            ("12", LookupField.HASH),
            (DATA_DIGEST, LookupField.ID),
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_identifier(
        self, record_store: RecordStore, identifier: str, by: LookupField
    ) -> None:
        with pytest.raises(ValidationError):
            await record_store.load_record(identifier, by)


class TestRecordUpdates:
    @pytest.mark.asyncio
    async def test_status_update_bumps_version_and_keeps_digests(
        self, record_store: RecordStore
    ) -> None:
        record_id = await _persist(record_store)

        record = await record_store.update_record_status(
            record_id, RecordStatus.VERIFIED, notes="checked on site"
        )
        await record_store.commit()

        assert record.status == RecordStatus.VERIFIED
        assert record.notes == "checked on site"
        assert record.version == 2
        assert record.data_digest == DATA_DIGEST

    @pytest.mark.asyncio
    async def test_status_update_leaves_notes_unless_given(
        self, record_store: RecordStore
    ) -> None:
        record_id = await _persist(record_store, draft=_make_draft(notes="original"))
        record = await record_store.update_record_status(record_id, RecordStatus.INACTIVE)
        assert record.notes == "original"

    @pytest.mark.asyncio
    async def test_status_update_for_missing_record(self, record_store: RecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await record_store.update_record_status(42, RecordStatus.INACTIVE)

    @pytest.mark.asyncio
    async def test_attachment_soft_delete_and_restore(
        self, record_store: RecordStore, tmp_path: Path
    ) -> None:
        record_id = await _persist(record_store, attachments=[_make_attachment(tmp_path)])
        bundle = await record_store.load_record(record_id)
        attachment_id = bundle.attachments[0].id

        removed = await record_store.deactivate_attachment(record_id, attachment_id)
        assert removed.is_active is False
        assert removed.deleted_at is not None

        restored = await record_store.restore_attachment(record_id, attachment_id)
        assert restored.is_active is True
        assert restored.deleted_at is None

    @pytest.mark.asyncio
    async def test_attachment_must_belong_to_record(
        self, record_store: RecordStore, tmp_path: Path
    ) -> None:
        record_id = await _persist(record_store, attachments=[_make_attachment(tmp_path)])
        bundle = await record_store.load_record(record_id)
        with pytest.raises(AttachmentNotFoundError):
            await record_store.deactivate_attachment(record_id + 1, bundle.attachments[0].id)


class TestAnchorStatus:
    @pytest.mark.asyncio
    async def test_confirmed_anchor_can_be_marked_reverted(
        self, record_store: RecordStore
    ) -> None:
        await _persist(record_store)
        anchor = await record_store.update_anchor_status(
            TX_ID, AnchorStatus.REVERTED, block_number=150
        )
        assert anchor.status == AnchorStatus.REVERTED
        assert anchor.block_number == 150

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, record_store: RecordStore) -> None:
        await _persist(record_store)
        await record_store.update_anchor_status(TX_ID, AnchorStatus.REVERTED)
        with pytest.raises(ValidationError) as exc_info:
            await record_store.update_anchor_status(TX_ID, AnchorStatus.CONFIRMED)
        assert exc_info.value.code == "INVALID_STATUS_TRANSITION"

    @pytest.mark.asyncio
    async def test_unknown_anchor(self, record_store: RecordStore) -> None:
        with pytest.raises(RecordNotFoundError):
            await record_store.update_anchor_status(TX_ID, AnchorStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_list_anchors_by_status(self, record_store: RecordStore) -> None:
        await _persist(record_store)
        assert len(await record_store.list_anchors(status=AnchorStatus.CONFIRMED)) == 1
        assert await record_store.list_anchors(status=AnchorStatus.PENDING) == []

    @pytest.mark.asyncio
    async def test_pending_anchor_without_record(self, record_store: RecordStore) -> None:
        envelope = build_envelope(DATA_DIGEST, {"producerId": "FARM001"}).to_dict()
        created = await record_store.record_pending_anchor(
            TX_ID,
            network_name="amoy",
            from_address=SIGNER,
            envelope=envelope,
            chain_id=80002,
        )
        assert created is True
        again = await record_store.record_pending_anchor(
            TX_ID, network_name="amoy", from_address=SIGNER, envelope=envelope
        )
        assert again is False
        await record_store.commit()

        pending = await record_store.list_anchors(status=AnchorStatus.PENDING)
        assert len(pending) == 1
        assert pending[0].record_id is None
        assert pending[0].to_address == SIGNER
        assert pending[0].envelope == envelope

        confirmed = await record_store.update_anchor_status(
            TX_ID, AnchorStatus.CONFIRMED, block_number=120
        )
        assert confirmed.block_number == 120
        assert confirmed.confirmed_at is not None


class TestVerificationLog:
    async def _log(self, store: RecordStore, record_id: int, *, is_valid: bool, ip: str) -> None:
        await store.log_verification(
            record_id=record_id,
            transaction_id=TX_ID,
            method=VerificationMethod.DATA_ONLY,
            is_valid=is_valid,
            stored_digest=DATA_DIGEST,
            current_digest=DATA_DIGEST if is_valid else "0x" + "99" * 32,
            caller=CallerContext(ip_address=ip),
        )

    @pytest.mark.asyncio
    async def test_every_attempt_is_appended(self, record_store: RecordStore) -> None:
        record_id = await _persist(record_store)
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await self._log(record_store, record_id, is_valid=False, ip="10.0.0.2")
        await record_store.commit()

        history = await record_store.verification_history(record_id)
        assert len(history) == 3
        assert history[0].is_valid is False

        bundle = await record_store.load_record(record_id)
        assert len(bundle.verification_history) == 3

    @pytest.mark.asyncio
    async def test_statistics(self, record_store: RecordStore) -> None:
        record_id = await _persist(record_store)
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await self._log(record_store, record_id, is_valid=False, ip="10.0.0.2")
        await record_store.commit()

        stats = await record_store.verification_statistics()
        assert stats.total == 3
        assert stats.valid == 2
        assert stats.invalid == 1
        assert stats.success_rate == 66.67
        assert stats.distinct_records == 1
        assert stats.distinct_clients == 2
        assert stats.by_method == {"data_only": 3}
        assert stats.first_verified_at is not None

    @pytest.mark.asyncio
    async def test_statistics_when_empty(self, record_store: RecordStore) -> None:
        stats = await record_store.verification_statistics()
        assert stats.total == 0
        assert stats.success_rate == 0.0
        assert stats.last_verified_at is None

    @pytest.mark.asyncio
    async def test_rows_are_append_only(
        self, record_store: RecordStore, db_session: AsyncSession
    ) -> None:
        record_id = await _persist(record_store)
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await record_store.commit()

        entry = (await db_session.execute(select(VerificationLog))).scalar_one()
        entry.is_valid = False
        with pytest.raises(ValueError):
            await db_session.flush()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_record_with_history_cannot_be_deleted(
        self, record_store: RecordStore, db_session: AsyncSession
    ) -> None:
        foreign_key = next(iter(VerificationLog.__table__.c.record_id.foreign_keys))
        assert foreign_key.ondelete == "RESTRICT"

        record_id = await _persist(record_store)
        await self._log(record_store, record_id, is_valid=True, ip="10.0.0.1")
        await record_store.commit()

        with pytest.raises(IntegrityError):
            await db_session.execute(
                delete(ProvenanceRecord).where(ProvenanceRecord.id == record_id)
            )
        await db_session.rollback()

        history = await record_store.verification_history(record_id)
        assert [entry.record_id for entry in history] == [record_id]


class TestAttachmentStatistics:
    @pytest.mark.asyncio
    async def test_counts_active_and_inactive_files(
        self, record_store: RecordStore, tmp_path: Path
    ) -> None:
        record_id = await _persist(
            record_store,
            attachments=[_make_attachment(tmp_path, 0), _make_attachment(tmp_path, 1)],
        )
        bundle = await record_store.load_record(record_id)
        await record_store.deactivate_attachment(record_id, bundle.attachments[0].id)
        await record_store.commit()

        stats = await record_store.attachment_statistics()
        assert stats.total_files == 2
        assert stats.active_files == 1
        assert stats.inactive_files == 1
        assert stats.total_bytes == 256
        assert stats.active_bytes == 128
        assert stats.records_with_files == 1
        assert stats.by_content_type == {"application/pdf": 1}

    @pytest.mark.asyncio
    async def test_empty(self, record_store: RecordStore) -> None:
        stats = await record_store.attachment_statistics()
        assert stats.total_files == 0
        assert stats.total_bytes == 0
        assert stats.by_content_type == {}
