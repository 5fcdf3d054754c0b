"""FastAPI dependencies for the process-wide ledger service."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from agrichain.modules.ledger.service import LedgerAnchorService


def get_ledger_service(request: Request) -> LedgerAnchorService:
    """Return the ledger service created in the application lifespan."""
    service = getattr(request.app.state, "ledger_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger service is not initialized",
        )
    return service


LedgerService = Annotated[LedgerAnchorService, Depends(get_ledger_service)]
