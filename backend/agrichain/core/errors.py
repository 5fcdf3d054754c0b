"""
Exception hierarchy shared by the hashing, ledger and persistence layers.

Every error carries a ``category`` (validation, ledger, persistence, not_found),
a stable ``code`` and the HTTP status the routers translate it to.
"""

from typing import Any

from fastapi import HTTPException


class ProvenanceError(Exception):
    """Base error for provenance operations."""

    category = "internal"
    code = "PROVENANCE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "category": self.category,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            detail["details"] = self.details
        return detail


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ProvenanceError):
    """Raised when caller input is missing or malformed."""

    category = "validation"
    code = "VALIDATION_FAILED"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        errors: list[str] | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.errors = list(errors or [])
        merged = dict(details or {})
        if self.errors:
            merged.setdefault("errors", self.errors)
        super().__init__(message, code=code, details=merged)


class InvalidDigestError(ValidationError):
    """Raised when a digest is not 0x followed by 64 lowercase hex characters."""

    code = "INVALID_DIGEST"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerError(ProvenanceError):
    """Base error for ledger interactions."""

    category = "ledger"
    code = "LEDGER_ERROR"
    status_code = 502


class LedgerUnavailableError(LedgerError):
    """Raised when the RPC endpoint cannot be reached or does not answer in time."""

    code = "LEDGER_UNAVAILABLE"
    status_code = 503


class LedgerRpcError(LedgerError):
    """Raised when the RPC endpoint returns a JSON-RPC error object."""

    code = "LEDGER_RPC_ERROR"

    def __init__(
        self,
        message: str,
        *,
        rpc_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.rpc_code = rpc_code
        merged = dict(details or {})
        if rpc_code is not None:
            merged.setdefault("rpc_code", rpc_code)
        super().__init__(message, code=code, details=merged)


class InsufficientFundsError(LedgerRpcError):
    """Raised when the signing account cannot pay for an anchor."""

    code = "INSUFFICIENT_FUNDS"


class TransactionRevertedError(LedgerRpcError):
    """Raised when the ledger rejects or reverts an anchor transaction."""

    code = "TRANSACTION_REVERTED"


class ConfirmationTimeoutError(LedgerError):
    """Raised when an anchor was submitted but no receipt arrived in time."""

    code = "CONFIRMATION_TIMEOUT"
    status_code = 504

    def __init__(
        self,
        message: str,
        *,
        transaction_id: str,
        envelope: dict[str, Any] | None = None,
    ) -> None:
        self.transaction_id = transaction_id
        self.envelope = envelope
        super().__init__(message, details={"transaction_id": transaction_id})


class TransactionNotConfirmedError(LedgerError):
    """Raised when a known transaction has no receipt yet."""

    code = "TX_NOT_CONFIRMED"
    status_code = 409


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(ProvenanceError):
    """Raised when the relational store is unreachable or rejects a write."""

    category = "persistence"
    code = "PERSISTENCE_FAILED"
    status_code = 503


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(ProvenanceError):
    """Base error for missing resources."""

    category = "not_found"
    code = "NOT_FOUND"
    status_code = 404


class RecordNotFoundError(NotFoundError):
    code = "RECORD_NOT_FOUND"


class TransactionNotFoundError(NotFoundError):
    code = "TX_NOT_FOUND"


class AttachmentNotFoundError(NotFoundError):
    code = "ATTACHMENT_NOT_FOUND"


def to_http_exception(exc: ProvenanceError) -> HTTPException:
    """Translate a provenance error into the HTTP error the routers raise."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
