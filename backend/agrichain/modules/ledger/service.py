"""
Ledger anchoring service.

Writes a digest into the data field of a zero-value self-transaction signed
locally with the configured private key, waits for the receipt, and later
recovers the envelope from a transaction id. Confirmation is observed by polling receipts;
consensus is not driven from here.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from agrichain.core.config import Settings, get_settings
from agrichain.core.crypto import require_digest
from agrichain.core.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    LedgerError,
    TransactionNotConfirmedError,
    TransactionNotFoundError,
    TransactionRevertedError,
    ValidationError,
)
from agrichain.core.logging import get_logger, short_hex
from agrichain.db.models import AnchorStatus
from agrichain.modules.ledger.codec import (
    AnchorEnvelope,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from agrichain.modules.ledger.rpc import LedgerRpcClient, LedgerRpcConfig, from_quantity
from agrichain.modules.ledger.signing import TransactionSigner

logger = get_logger(__name__)

WEI_PER_ETHER = Decimal(10) ** 18
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def wei_to_ether(value: int | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(value) / WEI_PER_ETHER


def _receipt_succeeded(receipt: dict[str, Any]) -> bool:
    # Pre-Byzantium receipts carry no status field
    status = receipt.get("status")
    if status is None:
        return True
    return from_quantity(status) != 0


@dataclass(frozen=True)
class AnchorResult:
    """Confirmed anchor as reported by the ledger."""

    transaction_id: str
    block_number: int
    block_hash: str | None
    from_address: str
    to_address: str
    gas_used: int | None
    gas_price: int | None
    fee_wei: int | None
    network_name: str
    chain_id: int | None
    status: AnchorStatus
    envelope: AnchorEnvelope
    confirmed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def transaction_fee(self) -> Decimal | None:
        return wei_to_ether(self.fee_wei)


@dataclass(frozen=True)
class LedgerRecovery:
    """
    Transaction facts recovered from the ledger.

    ``envelope`` is None when the payload is absent or not a readable envelope;
    confirmation and payload legibility are reported separately.
    """

    transaction_id: str
    block_number: int
    block_hash: str | None
    from_address: str | None
    to_address: str | None
    gas_used: int | None
    gas_price: int | None
    status: AnchorStatus
    envelope: AnchorEnvelope | None

    @property
    def decoded(self) -> bool:
        return self.envelope is not None

    @property
    def fee_wei(self) -> int | None:
        if self.gas_used is None or self.gas_price is None:
            return None
        return self.gas_used * self.gas_price


@dataclass(frozen=True)
class NetworkInfo:
    network_name: str
    chain_id: int
    latest_block: int
    rpc_url: str
    signer_address: str | None
    expected_chain_id: int | None

    @property
    def chain_id_matches(self) -> bool | None:
        if self.expected_chain_id is None:
            return None
        return self.chain_id == self.expected_chain_id


@dataclass(frozen=True)
class RecentAnchor:
    transaction_id: str
    block_number: int
    from_address: str | None
    to_address: str | None
    envelope: AnchorEnvelope
    block_timestamp: datetime | None = None


class LedgerAnchorService:
    """Anchors digests on an Ethereum-compatible ledger and reads them back."""

    def __init__(
        self,
        rpc: LedgerRpcClient,
        *,
        network_name: str = "amoy",
        signer: TransactionSigner | None = None,
        expected_chain_id: int | None = None,
        confirmation_timeout: float = 120.0,
        poll_interval: float = 2.0,
        history_scan_blocks: int = 100,
    ) -> None:
        self._rpc = rpc
        self._network_name = network_name
        self._signer = signer
        self._expected_chain_id = expected_chain_id
        self._confirmation_timeout = confirmation_timeout
        self._poll_interval = poll_interval
        self._history_scan_blocks = history_scan_blocks
        self._chain_id: int | None = None
        # One signing identity; submissions must not interleave
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: Any | None = None,
    ) -> LedgerAnchorService:
        settings = settings or get_settings()
        rpc = LedgerRpcClient(
            LedgerRpcConfig(rpc_url=settings.ledger_rpc_url, timeout=settings.ledger_rpc_timeout),
            transport=transport,
        )
        return cls(
            rpc,
            network_name=settings.ledger_network_name,
            signer=(
                TransactionSigner(settings.ledger_private_key)
                if settings.ledger_private_key
                else None
            ),
            expected_chain_id=settings.ledger_expected_chain_id,
            confirmation_timeout=settings.ledger_confirmation_timeout,
            poll_interval=settings.ledger_poll_interval,
            history_scan_blocks=settings.ledger_history_scan_blocks,
        )

    @property
    def network_name(self) -> str:
        return self._network_name

    @property
    def signer_address(self) -> str | None:
        """Address derived from the configured private key."""
        return self._signer.address if self._signer is not None else None

    def _require_signer(self) -> TransactionSigner:
        if self._signer is None:
            raise LedgerError(
                "No ledger private key is configured; anchoring is disabled",
                code="NO_SIGNER",
            )
        return self._signer

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._rpc.chain_id()
        return self._chain_id

    # ------------------------------------------------------------------
    # Anchor
    # ------------------------------------------------------------------

    async def anchor(self, digest: str, metadata: dict[str, Any] | None = None) -> AnchorResult:
        """
        Submit ``digest`` with ``metadata`` and wait for its receipt.

        Raises ``InvalidDigestError`` before any network call, ``InsufficientFundsError``
        when the signer holds no balance, ``LedgerUnavailableError`` on transport
        failures, ``TransactionRevertedError`` when the receipt reports failure and
        ``ConfirmationTimeoutError`` when no receipt arrives in time.
        """
        require_digest(digest)
        envelope = build_envelope(digest, metadata)
        data = encode_envelope(envelope)
        signer = self._require_signer()
        address = signer.address

        async with self._send_lock:
            balance = await self._rpc.get_balance(address)
            if balance <= 0:
                raise InsufficientFundsError(
                    "Signing account has no balance to pay for anchoring",
                    details={"signer": address},
                )
            chain_id = await self.chain_id()
            nonce = await self._rpc.get_transaction_count(address, "pending")
            gas_price = await self._rpc.gas_price()
            gas = await self._rpc.estimate_gas(
                {"from": address, "to": address, "value": "0x0", "data": data}
            )
            signed = signer.sign(
                nonce=nonce,
                gas=gas,
                gas_price=gas_price,
                chain_id=chain_id,
                to=address,
                data=data,
            )
            tx_id = await self._rpc.send_raw_transaction(signed.raw)

        if tx_id != signed.transaction_id:
            logger.warning(
                "anchor_hash_mismatch",
                transaction_id=tx_id,
                signed_transaction_id=signed.transaction_id,
            )
        logger.info(
            "anchor_submitted",
            transaction_id=tx_id,
            digest=short_hex(digest),
            network=self._network_name,
            nonce=nonce,
        )

        receipt = await self._wait_for_receipt(tx_id, envelope)
        if not _receipt_succeeded(receipt):
            logger.warning("anchor_reverted", transaction_id=tx_id)
            raise TransactionRevertedError(
                "Anchor transaction was reverted",
                details={"transaction_id": tx_id},
            )

        gas_used = from_quantity(receipt.get("gasUsed"))
        gas_price = from_quantity(receipt.get("effectiveGasPrice"))
        if gas_price is None:
            tx = await self._rpc.get_transaction(tx_id)
            gas_price = from_quantity(tx.get("gasPrice")) if tx else None
        fee_wei = gas_used * gas_price if gas_used is not None and gas_price is not None else None

        result = AnchorResult(
            transaction_id=tx_id,
            block_number=from_quantity(receipt.get("blockNumber")) or 0,
            block_hash=receipt.get("blockHash"),
            from_address=str(receipt.get("from") or address),
            to_address=str(receipt.get("to") or address),
            gas_used=gas_used,
            gas_price=gas_price,
            fee_wei=fee_wei,
            network_name=self._network_name,
            chain_id=chain_id,
            status=AnchorStatus.CONFIRMED,
            envelope=envelope,
        )
        logger.info(
            "anchor_confirmed",
            transaction_id=tx_id,
            block_number=result.block_number,
            gas_used=gas_used,
        )
        return result

    async def _wait_for_receipt(self, tx_id: str, envelope: AnchorEnvelope) -> dict[str, Any]:
        try:
            async with asyncio.timeout(self._confirmation_timeout):
                while True:
                    receipt = await self._rpc.get_transaction_receipt(tx_id)
                    if receipt and receipt.get("blockNumber") is not None:
                        return receipt
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError as exc:
            logger.error(
                "anchor_confirmation_timeout",
                transaction_id=tx_id,
                timeout_seconds=self._confirmation_timeout,
            )
            raise ConfirmationTimeoutError(
                f"No receipt for {tx_id} within {self._confirmation_timeout}s",
                transaction_id=tx_id,
                envelope=envelope.to_dict(),
            ) from exc

    # ------------------------------------------------------------------
    # Recover
    # ------------------------------------------------------------------

    async def recover(self, transaction_id: str) -> LedgerRecovery:
        """Fetch a transaction and its receipt and decode the envelope it carries."""
        tx_id = require_digest(
            transaction_id.lower() if isinstance(transaction_id, str) else transaction_id,
            field="transaction_id",
        )

        tx = await self._rpc.get_transaction(tx_id)
        if tx is None:
            raise TransactionNotFoundError(
                f"Transaction {tx_id} not found", details={"transaction_id": tx_id}
            )
        receipt = await self._rpc.get_transaction_receipt(tx_id)
        if receipt is None or receipt.get("blockNumber") is None:
            raise TransactionNotConfirmedError(
                f"Transaction {tx_id} is not confirmed yet",
                details={"transaction_id": tx_id},
            )

        envelope = decode_envelope(tx.get("input") or tx.get("data"))
        if envelope is None:
            logger.warning("ledger_envelope_undecodable", transaction_id=tx_id)

        gas_price = from_quantity(receipt.get("effectiveGasPrice"))
        if gas_price is None:
            gas_price = from_quantity(tx.get("gasPrice"))

        return LedgerRecovery(
            transaction_id=tx_id,
            block_number=from_quantity(receipt.get("blockNumber")) or 0,
            block_hash=receipt.get("blockHash"),
            from_address=tx.get("from"),
            to_address=tx.get("to"),
            gas_used=from_quantity(receipt.get("gasUsed")),
            gas_price=gas_price,
            status=(
                AnchorStatus.CONFIRMED if _receipt_succeeded(receipt) else AnchorStatus.REVERTED
            ),
            envelope=envelope,
        )

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    async def balance(self, address: str) -> Decimal:
        """Balance of ``address`` in ether."""
        if not isinstance(address, str) or not _ADDRESS_RE.match(address):
            raise ValidationError(
                "address must be 0x followed by 40 hex characters",
                details={"field": "address"},
            )
        return wei_to_ether(await self._rpc.get_balance(address)) or Decimal(0)

    async def network_info(self) -> NetworkInfo:
        chain_id = await self.chain_id()
        latest_block = await self._rpc.block_number()
        signer = self.signer_address
        if signer is None:
            logger.warning("ledger_signer_unconfigured", network=self._network_name)
        info = NetworkInfo(
            network_name=self._network_name,
            chain_id=chain_id,
            latest_block=latest_block,
            rpc_url=self._rpc.rpc_url,
            signer_address=signer,
            expected_chain_id=self._expected_chain_id,
        )
        if info.chain_id_matches is False:
            logger.warning(
                "ledger_chain_id_mismatch",
                chain_id=chain_id,
                expected_chain_id=self._expected_chain_id,
            )
        return info

    async def recent_anchors(
        self,
        limit: int = 10,
        scan_blocks: int | None = None,
    ) -> list[RecentAnchor]:
        """Scan the latest blocks for envelopes sent from or to the signer, newest first."""
        if limit <= 0:
            return []
        scan = scan_blocks or self._history_scan_blocks
        signer = self._require_signer().address.lower()
        latest = await self._rpc.block_number()
        lowest = max(latest - scan + 1, 0)

        found: list[RecentAnchor] = []
        for number in range(latest, lowest - 1, -1):
            block = await self._rpc.get_block(number, full_transactions=True)
            if not block:
                continue
            timestamp = from_quantity(block.get("timestamp"))
            for tx in block.get("transactions") or []:
                if not isinstance(tx, dict):
                    continue
                parties = {str(tx.get("from") or "").lower(), str(tx.get("to") or "").lower()}
                if signer not in parties:
                    continue
                envelope = decode_envelope(tx.get("input") or tx.get("data"))
                if envelope is None:
                    continue
                found.append(
                    RecentAnchor(
                        transaction_id=str(tx.get("hash")),
                        block_number=number,
                        from_address=tx.get("from"),
                        to_address=tx.get("to"),
                        envelope=envelope,
                        block_timestamp=(
                            datetime.fromtimestamp(timestamp, UTC)
                            if timestamp is not None
                            else None
                        ),
                    )
                )
                if len(found) >= limit:
                    return found
        return found

    async def is_reachable(self) -> bool:
        """Return True when the RPC endpoint answers."""
        try:
            await self._rpc.block_number()
        except LedgerError:
            return False
        return True

    async def close(self) -> None:
        await self._rpc.close()
