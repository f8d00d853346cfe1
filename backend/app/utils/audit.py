"""Append-only batch audit log.

Usage:
    await record_event(
        tx, batch, "DUMP", delta=-10,
        units=10, reason="pest", new_quantity=50,
    )

The row is added to the current ledger transaction and committed (or
rolled back) with the batch mutation it describes.  Events are never
updated or deleted here; retention is an external concern.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant.batch import Batch
from app.models.tenant.batch_event import BatchEvent
from app.services.transaction import TransactionContext


def record_event(
    tx: TransactionContext,
    batch: Batch,
    event_type: str,
    *,
    delta: int = 0,
    note: str | None = None,
    **payload,
) -> BatchEvent:
    """Append one event for `batch` to the open transaction."""
    event = BatchEvent(
        org_id=tx.org_id,
        batch_id=batch.id,
        type=event_type,
        payload={**payload, "delta": delta},
        note=note,
        by_user_id=tx.user_id,
        request_id=tx.request_id,
        at=tx.now,
    )
    tx.add(event)
    return event


async def history(
    db: AsyncSession,
    org_id: str,
    batch_id: str,
    *,
    event_types: set[str] | None = None,
) -> list[BatchEvent]:
    """Events for one batch, oldest first, in insertion order."""
    stmt = select(BatchEvent).where(
        BatchEvent.org_id == org_id,
        BatchEvent.batch_id == batch_id,
    )
    if event_types:
        stmt = stmt.where(BatchEvent.type.in_(event_types))
    result = await db.execute(stmt.order_by(BatchEvent.at.asc(), BatchEvent.seq.asc()))
    return list(result.scalars().all())
