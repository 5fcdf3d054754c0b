"""Ledger status endpoints and anchor reconciliation."""

from __future__ import annotations

from fastapi import APIRouter, Query

from agrichain.core.errors import ProvenanceError, to_http_exception
from agrichain.modules.ledger.dependencies import LedgerService
from agrichain.modules.ledger.schemas import (
    BalanceResponse,
    LedgerRecoveryResponse,
    NetworkInfoResponse,
    ReconfirmResponse,
    RecentAnchorResponse,
)
from agrichain.modules.provenance.dependencies import Caller, Coordinator

router = APIRouter()


@router.get("/network", response_model=NetworkInfoResponse)
async def get_network_info(ledger: LedgerService) -> NetworkInfoResponse:
    try:
        info = await ledger.network_info()
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return NetworkInfoResponse.from_info(info)


@router.get("/balance/{address}", response_model=BalanceResponse)
async def get_balance(address: str, ledger: LedgerService) -> BalanceResponse:
    try:
        balance = await ledger.balance(address)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return BalanceResponse(address=address, balance=balance)


@router.get("/transactions/{transaction_id}", response_model=LedgerRecoveryResponse)
async def get_transaction(transaction_id: str, ledger: LedgerService) -> LedgerRecoveryResponse:
    """Fetch a transaction and decode the anchor envelope it carries, if any."""
    try:
        recovery = await ledger.recover(transaction_id)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return LedgerRecoveryResponse.from_recovery(recovery)


@router.get("/anchors/recent", response_model=list[RecentAnchorResponse])
async def list_recent_anchors(
    ledger: LedgerService,
    limit: int = Query(10, ge=1, le=100),
    scan_blocks: int | None = Query(None, ge=1, le=10_000),
) -> list[RecentAnchorResponse]:
    """Scan the latest blocks for anchors sent by the signing account."""
    try:
        anchors = await ledger.recent_anchors(limit=limit, scan_blocks=scan_blocks)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return [RecentAnchorResponse.from_anchor(anchor) for anchor in anchors]


@router.post("/anchors/{transaction_id}/reconfirm", response_model=ReconfirmResponse)
async def reconfirm_anchor(
    transaction_id: str,
    coordinator: Coordinator,
    caller: Caller,
) -> ReconfirmResponse:
    """Re-read a locally recorded anchor from the ledger and apply its current status."""
    try:
        anchor = await coordinator.reconfirm_anchor(transaction_id, caller=caller)
    except ProvenanceError as exc:
        raise to_http_exception(exc) from exc
    return ReconfirmResponse(
        transaction_id=anchor.transaction_id,
        status=anchor.status,
        block_number=anchor.block_number,
        confirmed_at=anchor.confirmed_at,
    )
