"""
Ethereum-compatible JSON-RPC client.

Persistent httpx.AsyncClient, dataclass config object, structured logging,
and explicit ``close()`` lifecycle. Transport failures surface as
``LedgerUnavailableError``; JSON-RPC error objects are classified into the
ledger error hierarchy.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any

import httpx

from agrichain.core.errors import (
    InsufficientFundsError,
    LedgerRpcError,
    LedgerUnavailableError,
    TransactionRevertedError,
)
from agrichain.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LedgerRpcConfig:
    """Connection settings for one JSON-RPC endpoint."""

    rpc_url: str
    timeout: float = 30.0


def to_quantity(value: int) -> str:
    """Encode an integer as a JSON-RPC hex quantity."""
    return hex(value)


def from_quantity(value: Any) -> int | None:
    """Decode a JSON-RPC hex quantity, tolerating plain integers and nulls."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    if text.startswith(("0x", "0X")):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


def _classify_rpc_error(method: str, error: dict[str, Any]) -> LedgerRpcError:
    message = str(error.get("message") or "JSON-RPC error")
    rpc_code = error.get("code")
    lowered = message.lower()
    details = {"method": method}
    if "insufficient funds" in lowered:
        return InsufficientFundsError(message, rpc_code=rpc_code, details=details)
    if "revert" in lowered:
        return TransactionRevertedError(message, rpc_code=rpc_code, details=details)
    return LedgerRpcError(message, rpc_code=rpc_code, details=details)


class LedgerRpcClient:
    """Minimal async client for the ``eth_*`` methods the anchor service needs."""

    def __init__(
        self,
        config: LedgerRpcConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    @property
    def rpc_url(self) -> str:
        return self._config.rpc_url

    def _get_client(self) -> httpx.AsyncClient:
        """Return (or lazily create) the HTTP client."""
        if self._http_client is None:
            url = (self._config.rpc_url or "").strip()
            if not url:
                raise LedgerUnavailableError("Ledger RPC URL is not configured")
            self._http_client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self._config.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Issue one JSON-RPC request and return its ``result`` member."""
        client = self._get_client()
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}

        try:
            response = await client.post(self._config.rpc_url, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("ledger_rpc_timeout", method=method, url=self._config.rpc_url)
            raise LedgerUnavailableError(
                f"Ledger RPC timed out during {method}", details={"method": method}
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "ledger_rpc_http_error",
                method=method,
                status_code=exc.response.status_code,
            )
            raise LedgerUnavailableError(
                f"Ledger RPC returned HTTP {exc.response.status_code} during {method}",
                details={"method": method, "status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("ledger_rpc_unreachable", method=method, error=str(exc))
            raise LedgerUnavailableError(
                f"Ledger RPC unreachable during {method}", details={"method": method}
            ) from exc
        except ValueError as exc:
            raise LedgerRpcError(
                f"Ledger RPC returned a non-JSON body for {method}", details={"method": method}
            ) from exc

        if not isinstance(payload, dict):
            raise LedgerRpcError(
                f"Ledger RPC returned a malformed response for {method}",
                details={"method": method},
            )
        error = payload.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise _classify_rpc_error(method, error)
        return payload.get("result")

    # ------------------------------------------------------------------
    # eth_* wrappers
    # ------------------------------------------------------------------

    async def chain_id(self) -> int:
        return from_quantity(await self.call("eth_chainId")) or 0

    async def block_number(self) -> int:
        return from_quantity(await self.call("eth_blockNumber")) or 0

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return from_quantity(await self.call("eth_getBalance", [address, block])) or 0

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return from_quantity(await self.call("eth_getTransactionCount", [address, block])) or 0

    async def gas_price(self) -> int:
        return from_quantity(await self.call("eth_gasPrice")) or 0

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        return from_quantity(await self.call("eth_estimateGas", [transaction])) or 0

    async def send_raw_transaction(self, raw: str) -> str:
        """Broadcast a locally signed transaction and return its hash."""
        result = await self.call("eth_sendRawTransaction", [raw])
        if not isinstance(result, str):
            raise LedgerRpcError(
                "eth_sendRawTransaction did not return a transaction hash",
                details={"method": "eth_sendRawTransaction"},
            )
        return result.lower()

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block(
        self, number: int | str = "latest", *, full_transactions: bool = False
    ) -> dict[str, Any] | None:
        tag = to_quantity(number) if isinstance(number, int) else number
        return await self.call("eth_getBlockByNumber", [tag, full_transactions])

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
