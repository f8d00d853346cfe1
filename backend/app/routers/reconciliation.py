"""Reconciliation router: event-ledger and lineage checks.

Endpoints:
    POST  /run                       Trigger a reconciliation run for the caller's org
    GET   /alerts                    List alerts with filters
    PATCH /alerts/{alert_id}         Update alert status (acknowledge / resolve / dismiss)
    GET   /batches/{batch_id}        Reconcile a single batch

All endpoints are tenant-scoped and require reconciliation.read.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import Actor, require_permission
from app.database import get_db, utcnow
from app.middleware.exceptions import ResourceNotFoundError
from app.models.tenant.reconciliation_alert import ReconciliationAlert
from app.schemas.reconciliation import (
    AlertOut,
    AlertUpdate,
    BatchReconciliation,
    RunSummary,
)
from app.services.reconciliation import reconcile_batch, run_ledger_reconciliation

router = APIRouter()


# ── Trigger a reconciliation run ─────────────────────────────

@router.post("/run", response_model=RunSummary, status_code=status.HTTP_201_CREATED)
async def trigger_run(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("reconciliation.read")),
):
    """Check every batch's event ledger and the lineage graph.  Previous
    open alerts that no longer appear are auto-resolved."""
    summary = await run_ledger_reconciliation(db, actor.org_id)
    return RunSummary(**summary)


# ── List alerts with filters ─────────────────────────────────

@router.get("/alerts", response_model=list[AlertOut])
async def list_alerts(
    alert_type: str | None = Query(None, description="Filter by alert_type"),
    severity: str | None = Query(None, description="Filter by severity"),
    alert_status: str | None = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("reconciliation.read")),
):
    stmt = select(ReconciliationAlert).where(ReconciliationAlert.org_id == actor.org_id)

    if alert_type:
        stmt = stmt.where(ReconciliationAlert.alert_type == alert_type)
    if severity:
        stmt = stmt.where(ReconciliationAlert.severity == severity)
    if alert_status:
        stmt = stmt.where(ReconciliationAlert.status == alert_status)

    stmt = (
        stmt
        .order_by(ReconciliationAlert.created_at.desc())
        .limit(limit)
        .offset(offset)
    )

    result = await db.execute(stmt)
    return result.scalars().all()


# ── Update alert status ──────────────────────────────────────

@router.patch("/alerts/{alert_id}", response_model=AlertOut)
async def update_alert(
    alert_id: str,
    body: AlertUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("reconciliation.read")),
):
    """Acknowledge, resolve, or dismiss an alert."""
    valid_statuses = {"acknowledged", "resolved", "dismissed"}
    if body.status not in valid_statuses:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Status must be one of: {', '.join(sorted(valid_statuses))}",
        )

    result = await db.execute(
        select(ReconciliationAlert).where(
            ReconciliationAlert.id == alert_id,
            ReconciliationAlert.org_id == actor.org_id,
        )
    )
    alert = result.scalar_one_or_none()
    if not alert:
        raise ResourceNotFoundError("Alert", alert_id)

    alert.status = body.status
    if body.resolution_note:
        alert.resolution_note = body.resolution_note
    if body.status in ("resolved", "dismissed"):
        alert.resolved_at = utcnow()
        alert.resolved_by = actor.user_id

    await db.flush()
    return alert


# ── Single batch ─────────────────────────────────────────────

@router.get("/batches/{batch_id}", response_model=BatchReconciliation)
async def reconcile_single_batch(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("reconciliation.read")),
):
    return await reconcile_batch(db, actor.org_id, batch_id)
