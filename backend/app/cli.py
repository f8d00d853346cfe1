"""Management CLI for ledger maintenance.

Usage:
    python -m app.cli purge-idempotency     # Delete expired idempotency records
    python -m app.cli reconcile <org_id>    # Run ledger reconciliation for one org
"""

import asyncio
import sys

from app.database import async_session
from app.services.reconciliation import run_ledger_reconciliation
from app.services.scheduler import run_housekeeping
from app.tenancy import validate_org_id


def purge_idempotency():
    removed = asyncio.run(run_housekeeping())
    print(f"Removed {removed} expired idempotency record(s)")


async def _reconcile(org_id: str) -> dict:
    async with async_session() as db:
        async with db.begin():
            return await run_ledger_reconciliation(db, org_id)


def reconcile(org_id: str):
    try:
        validate_org_id(org_id)
    except ValueError as exc:
        print(f"  {exc}")
        sys.exit(2)

    summary = asyncio.run(_reconcile(org_id))
    print(f"  Run {summary['run_id']}: {summary['batches_checked']} batches checked")
    for alert_type, count in sorted(summary["by_type"].items()):
        print(f"  {alert_type}: {count}")
    print(f"\n{summary['total_alerts']} alert(s)")


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "purge-idempotency":
        purge_idempotency()
    elif cmd == "reconcile" and len(sys.argv) > 2:
        reconcile(sys.argv[2])
    else:
        print("Usage: python -m app.cli [purge-idempotency|reconcile <org_id>]")
