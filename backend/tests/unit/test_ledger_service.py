"""Tests for anchoring digests and recovering envelopes from the ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest

from agrichain.core.config import Settings
from agrichain.core.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    InvalidDigestError,
    LedgerError,
    TransactionNotConfirmedError,
    TransactionNotFoundError,
    TransactionRevertedError,
    ValidationError,
)
from agrichain.db.models import AnchorStatus
from agrichain.modules.ledger.rpc import LedgerRpcClient, LedgerRpcConfig
from agrichain.modules.ledger.service import LedgerAnchorService, wei_to_ether
from agrichain.modules.ledger.signing import TransactionSigner
from tests.tools.fake_ledger import GAS_LIMIT, GAS_PRICE, PRIVATE_KEY, RPC_URL, SIGNER, FakeChain

DIGEST = "0x" + "ab" * 32


def _service(chain: FakeChain, **overrides: object) -> LedgerAnchorService:
    options: dict[str, object] = {
        "network_name": "amoy",
        "signer": TransactionSigner(PRIVATE_KEY),
        "expected_chain_id": 80002,
        "confirmation_timeout": 1.0,
        "poll_interval": 0.01,
        "history_scan_blocks": 20,
    }
    options.update(overrides)
    rpc = LedgerRpcClient(LedgerRpcConfig(rpc_url=RPC_URL), transport=chain.transport())
    return LedgerAnchorService(rpc, **options)  # type: ignore[arg-type]


class TestAnchor:
    @pytest.mark.asyncio
    async def test_anchor_then_recover(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        result = await ledger_service.anchor(DIGEST, {"producerId": "FARM001"})

        assert result.status == AnchorStatus.CONFIRMED
        assert result.block_number == fake_chain.block_number
        assert result.from_address == SIGNER
        assert result.to_address == SIGNER
        assert result.gas_used == 21_000
        assert result.gas_price == GAS_PRICE
        assert result.fee_wei == 21_000 * GAS_PRICE
        assert result.transaction_fee == Decimal(21_000 * GAS_PRICE) / Decimal(10**18)
        assert result.chain_id == 80002
        assert result.network_name == "amoy"

        sent = fake_chain.sent[0]
        assert sent["value"] == 0
        assert sent["from"] == sent["to"] == SIGNER
        assert sent["nonce"] == 0
        assert sent["gas"] == GAS_LIMIT
        assert sent["gasPrice"] == GAS_PRICE
        assert result.transaction_id == fake_chain.transactions[result.transaction_id]["hash"]
        assert "eth_sendRawTransaction" in fake_chain.calls

        recovery = await ledger_service.recover(result.transaction_id)
        assert recovery.status == AnchorStatus.CONFIRMED
        assert recovery.decoded is True
        assert recovery.envelope == result.envelope
        assert recovery.envelope.hash == DIGEST
        assert recovery.envelope.metadata == {"producerId": "FARM001"}

    @pytest.mark.asyncio
    async def test_recover_accepts_uppercase_hex(
        self, ledger_service: LedgerAnchorService
    ) -> None:
        result = await ledger_service.anchor(DIGEST)
        recovery = await ledger_service.recover("0x" + result.transaction_id[2:].upper())
        assert recovery.transaction_id == result.transaction_id

    @pytest.mark.asyncio
    async def test_invalid_digest_makes_no_network_call(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        with pytest.raises(InvalidDigestError):
            await ledger_service.anchor("not-a-digest")
        assert fake_chain.calls == []

    @pytest.mark.asyncio
    async def test_zero_balance_is_insufficient_funds(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        fake_chain.balances[SIGNER.lower()] = 0
        with pytest.raises(InsufficientFundsError):
            await ledger_service.anchor(DIGEST)
        assert "eth_sendRawTransaction" not in fake_chain.calls

    @pytest.mark.asyncio
    async def test_node_rejection_is_insufficient_funds(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        fake_chain.errors["eth_sendRawTransaction"] = {
            "code": -32000,
            "message": "insufficient funds for gas * price + value",
        }
        with pytest.raises(InsufficientFundsError):
            await ledger_service.anchor(DIGEST)

    @pytest.mark.asyncio
    async def test_reverted_receipt(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        fake_chain.revert_next = True
        with pytest.raises(TransactionRevertedError):
            await ledger_service.anchor(DIGEST)

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, fake_chain: FakeChain) -> None:
        fake_chain.withhold_receipts = True
        service = _service(fake_chain, confirmation_timeout=0.05)
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await service.anchor(DIGEST)
        assert exc_info.value.transaction_id in fake_chain.transactions
        assert exc_info.value.envelope is not None
        assert exc_info.value.envelope["hash"] == DIGEST
        await service.close()

    @pytest.mark.asyncio
    async def test_consecutive_anchors_use_increasing_nonces(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        first = await ledger_service.anchor(DIGEST)
        second = await ledger_service.anchor("0x" + "cd" * 32)
        assert [tx["nonce"] for tx in fake_chain.sent] == [0, 1]
        assert first.transaction_id != second.transaction_id

    @pytest.mark.asyncio
    async def test_missing_private_key_disables_anchoring(self, fake_chain: FakeChain) -> None:
        service = _service(fake_chain, signer=None)
        with pytest.raises(LedgerError) as exc_info:
            await service.anchor(DIGEST)
        assert exc_info.value.code == "NO_SIGNER"
        assert fake_chain.calls == []
        await service.close()

    @pytest.mark.asyncio
    async def test_from_settings_derives_signer_address(self, fake_chain: FakeChain) -> None:
        settings = Settings(ledger_rpc_url=RPC_URL, ledger_private_key=PRIVATE_KEY[2:])
        service = LedgerAnchorService.from_settings(settings, transport=fake_chain.transport())
        assert service.signer_address == SIGNER
        await service.close()


class TestRecover:
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, ledger_service: LedgerAnchorService) -> None:
        with pytest.raises(TransactionNotFoundError):
            await ledger_service.recover("0x" + "0" * 64)

    @pytest.mark.asyncio
    async def test_malformed_transaction_id(self, ledger_service: LedgerAnchorService) -> None:
        with pytest.raises(InvalidDigestError):
            await ledger_service.recover("0x1234")

    @pytest.mark.asyncio
    async def test_unconfirmed_transaction(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        fake_chain.withhold_receipts = True
        tx_id = fake_chain.add_raw_transaction("0x")
        with pytest.raises(TransactionNotConfirmedError):
            await ledger_service.recover(tx_id)

    @pytest.mark.asyncio
    async def test_undecodable_payload_still_reports_confirmation(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        tx_id = fake_chain.add_raw_transaction("0x" + b"hello world".hex())
        recovery = await ledger_service.recover(tx_id)
        assert recovery.status == AnchorStatus.CONFIRMED
        assert recovery.envelope is None
        assert recovery.decoded is False
        assert recovery.fee_wei == 21_000 * GAS_PRICE


class TestReadOnlyQueries:
    @pytest.mark.asyncio
    async def test_balance_in_ether(self, ledger_service: LedgerAnchorService) -> None:
        assert await ledger_service.balance(SIGNER) == Decimal(1)

    @pytest.mark.parametrize("address", ["0x123", "1111111111111111111111111111111111111111"])
    @pytest.mark.asyncio
    async def test_balance_rejects_malformed_address(
        self, ledger_service: LedgerAnchorService, address: str
    ) -> None:
        with pytest.raises(ValidationError):
            await ledger_service.balance(address)

    @pytest.mark.asyncio
    async def test_network_info(self, ledger_service: LedgerAnchorService) -> None:
        info = await ledger_service.network_info()
        assert info.chain_id == 80002
        assert info.latest_block == 100
        assert info.signer_address == SIGNER
        assert info.chain_id_matches is True

    @pytest.mark.asyncio
    async def test_network_info_reports_chain_mismatch(self, fake_chain: FakeChain) -> None:
        service = _service(fake_chain, expected_chain_id=137)
        info = await service.network_info()
        assert info.chain_id_matches is False
        await service.close()

    @pytest.mark.asyncio
    async def test_network_info_without_signer(self) -> None:
        service = _service(FakeChain(), signer=None)
        info = await service.network_info()
        assert info.signer_address is None
        await service.close()

    @pytest.mark.asyncio
    async def test_recent_anchors_newest_first(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        first = await ledger_service.anchor(DIGEST)
        fake_chain.add_raw_transaction("0x" + b"noise".hex())
        fake_chain.add_raw_transaction("0x", sender="0x" + "2" * 40)
        second = await ledger_service.anchor("0x" + "cd" * 32)

        anchors = await ledger_service.recent_anchors(limit=10)
        assert [item.transaction_id for item in anchors] == [
            second.transaction_id,
            first.transaction_id,
        ]
        assert anchors[0].envelope.hash == "0x" + "cd" * 32
        assert anchors[0].block_timestamp is not None

    @pytest.mark.asyncio
    async def test_recent_anchors_respects_limit(
        self, ledger_service: LedgerAnchorService
    ) -> None:
        await ledger_service.anchor(DIGEST)
        latest = await ledger_service.anchor("0x" + "cd" * 32)
        anchors = await ledger_service.recent_anchors(limit=1)
        assert [item.transaction_id for item in anchors] == [latest.transaction_id]

    @pytest.mark.asyncio
    async def test_is_reachable(
        self, ledger_service: LedgerAnchorService, fake_chain: FakeChain
    ) -> None:
        assert await ledger_service.is_reachable() is True
        fake_chain.errors["eth_blockNumber"] = {"code": -32603, "message": "internal error"}
        assert await ledger_service.is_reachable() is False


def test_wei_to_ether() -> None:
    assert wei_to_ether(None) is None
    assert wei_to_ether(10**18) == Decimal(1)
