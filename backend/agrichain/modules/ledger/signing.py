"""
Local secp256k1 signing for anchor transactions.

Uses ``eth-account`` to derive the sender address from a private key and to
sign legacy (EIP-155) transactions. The key never leaves the process; the RPC
endpoint only ever sees the raw signed bytes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from eth_utils import to_checksum_address

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def is_valid_private_key(value: str) -> bool:
    """Return True for a 32-byte hex private key, with or without ``0x``."""
    return bool(_PRIVATE_KEY_RE.match(value.strip()))


@dataclass(frozen=True)
class SignedTransaction:
    """Raw signed transaction ready for ``eth_sendRawTransaction``."""

    raw: str
    transaction_id: str


class TransactionSigner:
    """Signs transactions with a single private key."""

    def __init__(self, private_key: str) -> None:
        key = private_key.strip()
        if not is_valid_private_key(key):
            raise ValueError("Private key must be 32 bytes of hex")
        self._account = Account.from_key(key if key.startswith("0x") else f"0x{key}")

    @property
    def address(self) -> str:
        """Checksummed address derived from the private key."""
        return str(self._account.address)

    def sign(
        self,
        *,
        nonce: int,
        gas: int,
        gas_price: int,
        chain_id: int,
        to: str,
        data: str,
        value: int = 0,
    ) -> SignedTransaction:
        """Sign a legacy transaction.

        Parameters
        ----------
        nonce:
            Next transaction count of the sender.
        gas, gas_price:
            Gas limit and price in wei.
        chain_id:
            EIP-155 replay protection id.
        to, data, value:
            Recipient, ``0x``-prefixed calldata and wei value.

        Returns
        -------
        SignedTransaction
            ``0x``-prefixed raw bytes and the transaction hash.
        """
        transaction: dict[str, Any] = {
            "nonce": nonce,
            "gas": gas,
            "gasPrice": gas_price,
            "chainId": chain_id,
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
        }
        signed = self._account.sign_transaction(transaction)
        return SignedTransaction(
            raw="0x" + bytes(signed.raw_transaction).hex(),
            transaction_id="0x" + bytes(signed.hash).hex(),
        )
