"""Database package."""

from agrichain.db.models import (
    AnchorStatus,
    AuditEvent,
    Base,
    FileAttachment,
    LedgerAnchor,
    Producer,
    ProvenanceRecord,
    RecordStatus,
    VerificationLog,
    VerificationMethod,
)
from agrichain.db.session import DbSession, close_db, get_db_session, init_db

__all__ = [
    "DbSession",
    "get_db_session",
    "init_db",
    "close_db",
    "Base",
    "Producer",
    "ProvenanceRecord",
    "RecordStatus",
    "LedgerAnchor",
    "AnchorStatus",
    "FileAttachment",
    "VerificationLog",
    "VerificationMethod",
    "AuditEvent",
]
