"""
Repair one-sided organization memberships.

    python -m app.scripts.reconcile_memberships              # every organization
    python -m app.scripts.reconcile_memberships --org-id ID  # one organization
    python -m app.scripts.reconcile_memberships --create-tables
"""

import asyncio
import argparse
import json
import sys
import uuid
from typing import Optional

import structlog

from app.core.database import get_engine, get_membership_service, init_db
from app.core.exceptions import MembershipError

log = structlog.get_logger()


async def reconcile(org_id: Optional[uuid.UUID], create_tables: bool = False) -> int:
    if create_tables:
        await init_db()

    service = get_membership_service()
    try:
        if org_id is not None:
            reports = [await service.reconcile(org_id)]
        else:
            reports = await service.reconcile_all()
    except MembershipError as exc:
        log.error("reconcile.failed", code=exc.code, **{k: str(v) for k, v in exc.context.items()})
        print(f"Reconcile failed: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await get_engine().dispose()

    for report in reports:
        print(json.dumps(report.model_dump(mode="json"), sort_keys=True))

    repaired = sum(1 for r in reports if r.repaired)
    log.info("reconcile.done", reports=len(reports), repaired=repaired)
    print(f"Done. {repaired} of {len(reports)} report(s) needed repairs.")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile organization memberships.")
    parser.add_argument("--org-id", type=uuid.UUID, default=None, help="Only this organization")
    parser.add_argument(
        "--create-tables", action="store_true", help="Create missing tables first (development)"
    )

    args = parser.parse_args()

    sys.exit(asyncio.run(reconcile(args.org_id, args.create_tables)))
