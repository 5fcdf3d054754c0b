"""Re-confirm locally recorded ledger anchors (for cron/CronJob execution).

Only observes the ledger and updates local anchor status; it never re-submits
an anchor. Pending rows left by a confirmation timeout have no record attached
and are reconciled the same way.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import UTC, datetime

from agrichain.core.config import get_settings
from agrichain.core.errors import ProvenanceError
from agrichain.db.models import AnchorStatus
from agrichain.db.session import close_db, get_background_session, init_db
from agrichain.modules.ledger.service import LedgerAnchorService
from agrichain.modules.provenance.service import ProvenanceCoordinator
from agrichain.modules.provenance.store import RecordStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-confirm ledger anchors against the chain.")
    parser.add_argument(
        "--status",
        choices=[status.value for status in AnchorStatus],
        default=AnchorStatus.PENDING.value,
        help="Local anchor status to reconcile (default: pending).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of anchors to check in one run.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run.",
    )
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    settings = get_settings()
    await init_db(args.database_url)
    ledger = LedgerAnchorService.from_settings(settings)
    try:
        async with get_background_session() as session:
            anchors = await RecordStore(session, settings=settings).list_anchors(
                status=AnchorStatus(args.status),
                limit=args.limit,
            )
            transaction_ids = [anchor.transaction_id for anchor in anchors]

        summary: dict[str, object] = {
            "ran_at": datetime.now(UTC).isoformat(),
            "network": settings.ledger_network_name,
            "checked": len(transaction_ids),
            "updated": [],
            "errors": [],
        }
        for transaction_id in transaction_ids:
            try:
                async with get_background_session() as session:
                    coordinator = ProvenanceCoordinator(
                        RecordStore(session, settings=settings),
                        ledger,
                        settings=settings,
                    )
                    anchor = await coordinator.reconfirm_anchor(transaction_id)
                    summary["updated"].append(
                        {"transaction_id": transaction_id, "status": anchor.status.value}
                    )
            except ProvenanceError as exc:
                summary["errors"].append(
                    {"transaction_id": transaction_id, "code": exc.code, "error": exc.message}
                )
        print(json.dumps(summary, indent=2))
        return 0 if not summary["errors"] else 1
    finally:
        await ledger.close()
        await close_db()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
