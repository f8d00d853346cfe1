"""Reconciliation service: checks the audit log and lineage against batch state.

The batch row is canonical; the event log is the reconcilable record.
For every batch:

    initial_quantity + Σ delta(non-creation events) == quantity

Creation events (CHECKIN, MOVE_IN, TRANSPLANT_IN) are skipped because
`initial_quantity` already counts them.

Each check_* function returns unsaved ReconciliationAlert objects;
`run_ledger_reconciliation` runs all checks for one organisation,
auto-resolves stale open alerts, persists the new ones, and returns a
run summary.
"""

import logging
import uuid
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.middleware.exceptions import ResourceNotFoundError
from app.models.tenant.batch import Batch
from app.models.tenant.batch_event import CREATION_EVENT_TYPES, BatchEvent
from app.models.tenant.reconciliation_alert import ReconciliationAlert
from app.services.ancestry import AncestryGraph
from app.utils.audit import history

logger = logging.getLogger(__name__)


def _severity(variance: int, expected: int) -> str:
    """Map a quantity variance to severity, relative to the expected figure."""
    if not expected:
        return "critical" if variance else "low"
    pct = abs(variance) / abs(expected) * 100
    if pct >= 20:
        return "critical"
    if pct >= 10:
        return "high"
    if pct >= 5:
        return "medium"
    return "low"


async def _get_batch(db: AsyncSession, org_id: str, batch_id: str) -> Batch:
    batch = (
        await db.execute(
            select(Batch).where(Batch.id == batch_id, Batch.org_id == org_id)
        )
    ).scalar_one_or_none()
    if batch is None:
        raise ResourceNotFoundError("Batch", batch_id)
    return batch


# ── Per-batch views ──────────────────────────────────────────

async def stock_movements(db: AsyncSession, org_id: str, batch_id: str) -> list[dict]:
    """Running-balance ledger: the opening quantity, then each quantity change."""
    batch = await _get_batch(db, org_id, batch_id)
    balance = batch.initial_quantity
    movements = [{
        "at": batch.created_at,
        "type": "INITIAL",
        "quantity": batch.initial_quantity,
        "balance": balance,
        "event_id": None,
        "note": None,
    }]
    for event in await history(db, org_id, batch_id):
        if event.is_creation or not event.delta:
            continue
        balance += event.delta
        movements.append({
            "at": event.at,
            "type": event.type,
            "quantity": event.delta,
            "balance": balance,
            "event_id": event.id,
            "note": event.note,
        })
    return movements


def _reconcile(batch: Batch, event_total: int) -> dict:
    expected = batch.initial_quantity + event_total
    return {
        "batch_id": batch.id,
        "batch_number": batch.batch_number,
        "initial_quantity": batch.initial_quantity,
        "event_total": event_total,
        "expected_quantity": expected,
        "actual_quantity": batch.quantity,
        "variance": batch.quantity - expected,
        "balanced": batch.quantity == expected,
    }


async def reconcile_batch(db: AsyncSession, org_id: str, batch_id: str) -> dict:
    batch = await _get_batch(db, org_id, batch_id)
    events = await history(db, org_id, batch_id)
    return _reconcile(batch, sum(e.delta for e in events if not e.is_creation))


# ─────────────────────────────────────────────────────────────
# CHECK 1:  initial_quantity + Σ deltas  ≠  quantity
# ─────────────────────────────────────────────────────────────

async def check_quantity_drift(
    db: AsyncSession, org_id: str, run_id: str
) -> list[ReconciliationAlert]:
    totals: dict[str, int] = defaultdict(int)
    events = await db.execute(
        select(BatchEvent.batch_id, BatchEvent.type, BatchEvent.payload)
        .where(
            BatchEvent.org_id == org_id,
            BatchEvent.type.notin_(CREATION_EVENT_TYPES),
        )
    )
    for batch_id, _, payload in events.all():
        totals[batch_id] += int((payload or {}).get("delta", 0) or 0)

    batches = (
        await db.execute(select(Batch).where(Batch.org_id == org_id))
    ).scalars().all()

    alerts = []
    for batch in batches:
        result = _reconcile(batch, totals.get(batch.id, 0))
        if result["balanced"]:
            continue
        alerts.append(ReconciliationAlert(
            org_id=org_id,
            alert_type="quantity_drift",
            severity=_severity(result["variance"], result["expected_quantity"]),
            title=f"Batch {batch.batch_number}: quantity ≠ event ledger",
            description=(
                f"Batch {batch.batch_number} holds {batch.quantity} units but "
                f"its events account for {result['expected_quantity']} "
                f"(variance {result['variance']:+d})."
            ),
            expected_value=result["expected_quantity"],
            actual_value=batch.quantity,
            variance=result["variance"],
            entity_refs={"batch_id": batch.id, "batch_number": batch.batch_number},
            run_id=run_id,
        ))
    return alerts


# ─────────────────────────────────────────────────────────────
# CHECK 2:  lineage edges to missing batches, lineage cycles
# ─────────────────────────────────────────────────────────────

async def check_ancestry(
    db: AsyncSession, org_id: str, run_id: str
) -> list[ReconciliationAlert]:
    graph = await AncestryGraph.load(db, org_id)
    alerts = []
    for issue in graph.issues:
        if issue["type"] == "ancestry_ghost":
            alerts.append(ReconciliationAlert(
                org_id=org_id,
                alert_type="ancestry_ghost",
                severity="medium",
                title=f"Lineage references missing batch {issue['ghost_batch_id']}",
                description=(
                    f"Edge {issue['parent_batch_id']} → {issue['child_batch_id']} "
                    f"points at a batch that does not exist in this organisation."
                ),
                entity_refs=issue,
                run_id=run_id,
            ))
        else:
            alerts.append(ReconciliationAlert(
                org_id=org_id,
                alert_type="ancestry_cycle",
                severity="critical",
                title="Lineage cycle detected",
                description=(
                    f"Edge {issue['parent_batch_id']} → {issue['child_batch_id']} "
                    f"would make a batch its own ancestor and was ignored."
                ),
                entity_refs=issue,
                run_id=run_id,
            ))
    return alerts


# ── Orchestration ────────────────────────────────────────────

async def run_ledger_reconciliation(db: AsyncSession, org_id: str) -> dict:
    """Execute all reconciliation checks for one org, persist alerts, return summary.

    Returns:
        {
            "run_id": "...",
            "ran_at": "...",
            "batches_checked": int,
            "total_alerts": int,
            "by_type": {"quantity_drift": int, ...},
            "by_severity": {"critical": int, ...},
        }
    """
    run_id = str(uuid.uuid4())
    now = utcnow()

    # Auto-resolve stale open alerts; anything still wrong is re-raised below
    old_open = await db.execute(
        select(ReconciliationAlert).where(
            ReconciliationAlert.org_id == org_id,
            ReconciliationAlert.status == "open",
        )
    )
    for old_alert in old_open.scalars().all():
        old_alert.status = "resolved"
        old_alert.resolution_note = "Auto-resolved: mismatch no longer detected"
        old_alert.resolved_at = now
    await db.flush()

    all_alerts: list[ReconciliationAlert] = []
    for check_fn in (check_quantity_drift, check_ancestry):
        all_alerts.extend(await check_fn(db, org_id, run_id))

    for alert in all_alerts:
        db.add(alert)
    await db.flush()

    batches_checked = len(
        (await db.execute(select(Batch.id).where(Batch.org_id == org_id))).all()
    )

    by_type: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    for a in all_alerts:
        by_type[a.alert_type] = by_type.get(a.alert_type, 0) + 1
        by_severity[a.severity] = by_severity.get(a.severity, 0) + 1

    if all_alerts:
        logger.warning(
            "Reconciliation %s for org %s: %d alerts %s", run_id, org_id, len(all_alerts), by_type
        )
    else:
        logger.info("Reconciliation %s for org %s: ledger balanced", run_id, org_id)

    return {
        "run_id": run_id,
        "ran_at": now.isoformat(),
        "batches_checked": batches_checked,
        "total_alerts": len(all_alerts),
        "by_type": by_type,
        "by_severity": by_severity,
    }
