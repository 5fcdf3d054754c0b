"""FastAPI dependencies building request-scoped provenance services."""

from typing import Annotated

from fastapi import Depends, Request

from agrichain.core.audit import CallerContext
from agrichain.core.config import get_settings
from agrichain.db.session import DbSession
from agrichain.modules.ledger.dependencies import LedgerService
from agrichain.modules.provenance.attachments import AttachmentStorage
from agrichain.modules.provenance.service import ProvenanceCoordinator
from agrichain.modules.provenance.store import RecordStore


def get_attachment_storage(request: Request) -> AttachmentStorage:
    storage = getattr(request.app.state, "attachment_storage", None)
    if storage is None:
        storage = AttachmentStorage(get_settings().upload_dir)
    return storage


def get_coordinator(
    db: DbSession,
    ledger: LedgerService,
    storage: Annotated[AttachmentStorage, Depends(get_attachment_storage)],
) -> ProvenanceCoordinator:
    return ProvenanceCoordinator(RecordStore(db), ledger, attachment_storage=storage)


def get_caller(request: Request) -> CallerContext:
    return CallerContext.from_request(request)


Coordinator = Annotated[ProvenanceCoordinator, Depends(get_coordinator)]
Caller = Annotated[CallerContext, Depends(get_caller)]
