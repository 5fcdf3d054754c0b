"""
Audit event logging for operational traceability.

Provides ``emit_audit_event()`` for recording state-changing actions
(store, status change, attachment soft delete/restore, anchor status updates)
into the ``audit_events`` table.

Audit writes run inside a SAVEPOINT of the caller's session so that a failure
to write an audit record never rolls back the business transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request

from agrichain.core.logging import get_logger
from agrichain.db.models import AuditEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerContext:
    """Network identity of whoever triggered an operation."""

    ip_address: str | None = None
    user_agent: str | None = None
    subject: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> CallerContext:
        if request is None:
            return cls()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address: str | None = forwarded.split(",")[0].strip() or None
        else:
            ip_address = request.client.host if request.client else None
        return cls(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


async def emit_audit_event(
    *,
    db_session: Any,
    action: str,
    resource_type: str,
    resource_id: str | int | None = None,
    caller: CallerContext | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent | None:
    """
    Write a single audit event to the database.

    Parameters
    ----------
    db_session:
        An active ``AsyncSession``. The caller is responsible for committing.
    action:
        Short verb describing the action, e.g. ``"store_record"``,
        ``"update_record_status"``, ``"deactivate_attachment"``.
    resource_type:
        The type of resource acted upon, e.g. ``"provenance_record"``,
        ``"file_attachment"``, ``"ledger_anchor"``.
    resource_id:
        Primary key or transaction id of the affected resource.
    caller:
        Network identity of the caller. None for system-initiated events.
    metadata:
        Optional extra context to attach to the audit record.

    Returns the flushed event, or None when the write failed.
    """
    event = AuditEvent(
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        subject=caller.subject if caller else None,
        ip_address=caller.ip_address if caller else None,
        user_agent=caller.user_agent if caller else None,
        metadata_=metadata,
    )

    try:
        async with db_session.begin_nested():
            db_session.add(event)
            await db_session.flush()
    except Exception:
        logger.warning(
            "audit_event_write_failed",
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            exc_info=True,
        )
        return None
    return event
