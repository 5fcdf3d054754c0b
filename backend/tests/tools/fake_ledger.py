"""In-memory Ethereum-style JSON-RPC node served through ``httpx.MockTransport``."""

from __future__ import annotations

import hashlib
import json
from typing import Any

import httpx
import rlp
from eth_account import Account
from eth_utils import keccak, to_checksum_address

PRIVATE_KEY = "0x" + "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
SIGNER = Account.from_key(PRIVATE_KEY).address
RPC_URL = "http://ledger.test/rpc"
GAS_PRICE = 30 * 10**9
GAS_LIMIT = 60_000


class FakeChain:
    """In-memory JSON-RPC node that mines every submitted transaction into its own block."""

    def __init__(self, *, chain_id: int = 80002, funded: tuple[str, ...] = (SIGNER,)) -> None:
        self.chain_id = chain_id
        self.balances: dict[str, int] = {account.lower(): 10**18 for account in funded}
        self.nonces: dict[str, int] = {}
        self.block_number = 100
        self.blocks: dict[int, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.withhold_receipts = False
        self.withheld: dict[str, dict[str, Any]] = {}
        self.revert_next = False
        self._nonce = 0

    # -- transport -------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append(method)
        if method in self.errors:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.errors[method]}
            )
        result = getattr(self, f"_{method}")(*body["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- helpers ---------------------------------------------------------

    def _mine(
        self, tx: dict[str, Any], *, status: str = "0x1", tx_hash: str | None = None
    ) -> str:
        self._nonce += 1
        data = tx.get("data") or tx.get("input") or "0x"
        if tx_hash is None:
            tx_hash = "0x" + hashlib.sha256(f"{self._nonce}:{data}".encode()).hexdigest()
        self.block_number += 1
        block_hash = "0x" + hashlib.sha256(f"block-{self.block_number}".encode()).hexdigest()
        full_tx = {
            "hash": tx_hash,
            "from": tx.get("from"),
            "to": tx.get("to"),
            "input": data,
            "value": hex(tx.get("value", 0)),
            "gasPrice": hex(tx.get("gasPrice", GAS_PRICE)),
            "blockNumber": hex(self.block_number),
        }
        self.transactions[tx_hash] = full_tx
        self.blocks[self.block_number] = {
            "number": hex(self.block_number),
            "hash": block_hash,
            "timestamp": hex(1_700_000_000 + self.block_number),
            "transactions": [full_tx],
        }
        receipt = {
            "transactionHash": tx_hash,
            "blockNumber": hex(self.block_number),
            "blockHash": block_hash,
            "from": tx.get("from"),
            "to": tx.get("to"),
            "gasUsed": hex(21_000),
            "effectiveGasPrice": hex(tx.get("gasPrice", GAS_PRICE)),
            "status": status,
        }
        if self.withhold_receipts:
            self.withheld[tx_hash] = receipt
        else:
            self.receipts[tx_hash] = receipt
        return tx_hash

    def release_receipts(self) -> None:
        """Publish every receipt held back while ``withhold_receipts`` was set."""
        self.withhold_receipts = False
        self.receipts.update(self.withheld)
        self.withheld.clear()

    def add_raw_transaction(self, data: str, *, sender: str = SIGNER) -> str:
        """Mine a transaction with an arbitrary data payload."""
        return self._mine({"from": sender, "to": sender, "data": data})

    # -- eth_* -----------------------------------------------------------

    def _eth_chainId(self) -> str:
        return hex(self.chain_id)

    def _eth_blockNumber(self) -> str:
        return hex(self.block_number)

    def _eth_getBalance(self, address: str, _block: str) -> str:
        return hex(self.balances.get(address.lower(), 0))

    def _eth_getTransactionCount(self, address: str, _block: str) -> str:
        return hex(self.nonces.get(address.lower(), 0))

    def _eth_gasPrice(self) -> str:
        return hex(GAS_PRICE)

    def _eth_estimateGas(self, _tx: dict[str, Any]) -> str:
        return hex(GAS_LIMIT)

    def _eth_sendRawTransaction(self, raw: str) -> str:
        raw_bytes = bytes.fromhex(raw.removeprefix("0x"))
        nonce, gas_price, gas, to, value, data = rlp.decode(raw_bytes)[:6]
        sender = str(Account.recover_transaction(raw))
        tx = {
            "from": sender,
            "to": to_checksum_address(to),
            "value": int.from_bytes(value, "big"),
            "data": "0x" + data.hex(),
            "nonce": int.from_bytes(nonce, "big"),
            "gas": int.from_bytes(gas, "big"),
            "gasPrice": int.from_bytes(gas_price, "big"),
        }
        self.sent.append(tx)
        self.nonces[sender.lower()] = tx["nonce"] + 1
        status = "0x0" if self.revert_next else "0x1"
        self.revert_next = False
        return self._mine(tx, status=status, tx_hash="0x" + keccak(raw_bytes).hex())

    def _eth_getTransactionByHash(self, tx_hash: str) -> dict[str, Any] | None:
        return self.transactions.get(tx_hash)

    def _eth_getTransactionReceipt(self, tx_hash: str) -> dict[str, Any] | None:
        return self.receipts.get(tx_hash)

    def _eth_getBlockByNumber(self, tag: str, full: bool) -> dict[str, Any] | None:
        number = self.block_number if tag == "latest" else int(tag, 16)
        block = self.blocks.get(number)
        if block is None or full:
            return block
        return {**block, "transactions": [tx["hash"] for tx in block["transactions"]]}
