"""Pydantic schemas for ledger API responses."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from agrichain.db.models import AnchorStatus
from agrichain.modules.ledger.codec import AnchorEnvelope
from agrichain.modules.ledger.service import LedgerRecovery, NetworkInfo, RecentAnchor


class EnvelopeResponse(BaseModel):
    """Decoded anchor payload."""

    timestamp: str
    hash: str
    metadata: dict[str, Any]
    version: int | None = None

    @classmethod
    def from_envelope(cls, envelope: AnchorEnvelope) -> EnvelopeResponse:
        return cls(
            timestamp=envelope.timestamp,
            hash=envelope.hash,
            metadata=dict(envelope.metadata),
            version=envelope.version,
        )


class LedgerRecoveryResponse(BaseModel):
    transaction_id: str
    block_number: int
    block_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    gas_used: int | None = None
    gas_price: int | None = None
    status: AnchorStatus
    decoded: bool
    envelope: EnvelopeResponse | None = None

    @classmethod
    def from_recovery(cls, recovery: LedgerRecovery) -> LedgerRecoveryResponse:
        return cls(
            transaction_id=recovery.transaction_id,
            block_number=recovery.block_number,
            block_hash=recovery.block_hash,
            from_address=recovery.from_address,
            to_address=recovery.to_address,
            gas_used=recovery.gas_used,
            gas_price=recovery.gas_price,
            status=recovery.status,
            decoded=recovery.decoded,
            envelope=(
                EnvelopeResponse.from_envelope(recovery.envelope)
                if recovery.envelope is not None
                else None
            ),
        )


class NetworkInfoResponse(BaseModel):
    network_name: str
    chain_id: int
    latest_block: int
    rpc_url: str
    signer_address: str | None = None
    expected_chain_id: int | None = None
    chain_id_matches: bool | None = None

    @classmethod
    def from_info(cls, info: NetworkInfo) -> NetworkInfoResponse:
        return cls(
            network_name=info.network_name,
            chain_id=info.chain_id,
            latest_block=info.latest_block,
            rpc_url=info.rpc_url,
            signer_address=info.signer_address,
            expected_chain_id=info.expected_chain_id,
            chain_id_matches=info.chain_id_matches,
        )


class BalanceResponse(BaseModel):
    address: str
    balance: Decimal
    unit: str = "ether"


class RecentAnchorResponse(BaseModel):
    transaction_id: str
    block_number: int
    from_address: str | None = None
    to_address: str | None = None
    block_timestamp: datetime | None = None
    envelope: EnvelopeResponse

    @classmethod
    def from_anchor(cls, anchor: RecentAnchor) -> RecentAnchorResponse:
        return cls(
            transaction_id=anchor.transaction_id,
            block_number=anchor.block_number,
            from_address=anchor.from_address,
            to_address=anchor.to_address,
            block_timestamp=anchor.block_timestamp,
            envelope=EnvelopeResponse.from_envelope(anchor.envelope),
        )


class ReconfirmResponse(BaseModel):
    transaction_id: str
    status: AnchorStatus
    block_number: int | None = None
    confirmed_at: datetime | None = None
