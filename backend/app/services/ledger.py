"""Batch quantity ledger: check-in, move/split, transplant, dump, adjust, archive.

Every function here takes an open TransactionContext and does all of its
reads and writes through it, so the caller (normally IdempotencyGuard via
run_ledger_transaction) owns the atomic boundary.  Business-rule
violations are raised before anything commits.

Quantity rules:
  - every write leaves quantity >= 0
  - a quantity change appends exactly one event on that batch whose
    payload `delta` equals the change applied
  - split:  parent.after + child.created == parent.before
  - writes that depend on a quantity read are compare-and-set; Dump and
    Adjust are single guarded UPDATEs with no read first

Status machine:
  growing → ready → sold | archived
  growing → archived, ready → growing (rework)
  sold and archived are terminal
"""

import logging

from app.config import settings
from app.middleware.exceptions import BusinessLogicError, ConflictError
from app.models.tenant.batch import STATUSES, Batch
from app.models.tenant.batch_ancestry import BatchAncestry
from app.schemas.batch import (
    AdjustRequest,
    CheckInRequest,
    DumpRequest,
    MoveRequest,
    TransplantRequest,
)
from app.services.transaction import TransactionContext
from app.utils.audit import record_event
from app.utils.numbering import allocate_batch_number

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    "growing": {"ready", "archived"},
    "ready": {"growing", "sold", "archived"},
    "sold": set(),
    "archived": set(),
}

OVERDRAW_CLAMP = "clamp"
OVERDRAW_REJECT = "reject"


def _ensure_live(batch: Batch) -> None:
    if batch.is_archived:
        raise ConflictError(
            f"Batch {batch.batch_number} is archived",
            error_code="BATCH_ARCHIVED",
            details={"batch_id": batch.id},
        )


def _ensure_can_archive(batch: Batch) -> None:
    """Sold is terminal; growing and ready batches may be archived."""
    if not batch.is_archived and "archived" not in STATUS_TRANSITIONS[batch.status]:
        raise ConflictError(
            f"Cannot archive batch {batch.batch_number} in status {batch.status}",
            error_code="INVALID_TRANSITION",
            details={"from": batch.status, "to": "archived"},
        )


async def _create_batch(tx: TransactionContext, *, phase: str, quantity: int, **attrs) -> Batch:
    """Number and insert a new batch; flushed so events can reference it."""
    batch_number, scheme = await allocate_batch_number(tx, phase, tx.now)
    batch = Batch(
        org_id=tx.org_id,
        batch_number=batch_number,
        number_scheme=scheme,
        phase=phase,
        status=attrs.pop("status", "growing"),
        quantity=quantity,
        initial_quantity=quantity,
        created_by=tx.user_id,
        created_at=tx.now,
        updated_at=tx.now,
        **attrs,
    )
    tx.add(batch)
    await tx.flush()
    return batch


# ── Check-in ─────────────────────────────────────────────────

async def check_in(tx: TransactionContext, body: CheckInRequest) -> Batch:
    """Create a batch from incoming stock."""
    batch = await _create_batch(
        tx,
        phase=body.phase,
        quantity=body.quantity,
        variety=body.variety,
        size=body.size,
        planted_at=body.planted_at,
        location_id=body.location_id,
        supplier_id=body.supplier_id,
        notes=body.notes,
    )
    record_event(
        tx, batch, "CHECKIN",
        delta=body.quantity,
        note=body.notes,
        quantity=body.quantity,
        location_id=body.location_id,
        supplier_id=body.supplier_id,
    )
    logger.info(
        "Checked in batch %s (%s) with %d units [request %s]",
        batch.id, batch.batch_number, batch.quantity, tx.request_id,
    )
    return batch


# ── Move / split ─────────────────────────────────────────────

async def move_batch(tx: TransactionContext, batch_id: str, body: MoveRequest) -> dict:
    """Move a whole batch, or split part of it into a new batch at `destination`.

    Returns {"movedAll": bool, "newBatchId": str | None}.
    """
    batch = await tx.get_batch(batch_id)
    _ensure_live(batch)

    available = batch.quantity
    qty = available if body.quantity is None else body.quantity
    if qty <= 0 or qty > available:
        raise BusinessLogicError(
            f"Move quantity must be between 1 and {available}, got {qty}",
            field="quantity",
        )

    if qty == available:
        from_location = batch.location_id
        await tx.update_batch(batch, expect_quantity=available, location_id=body.destination)
        record_event(
            tx, batch, "MOVE",
            note=body.note,
            from_location_id=from_location,
            to_location_id=body.destination,
            units_moved=qty,
            spaced=body.spaced,
        )
        logger.info(
            "Moved batch %s (%s) to %s, %d units [request %s]",
            batch.id, batch.batch_number, body.destination, qty, tx.request_id,
        )
        return {"movedAll": True, "newBatchId": None}

    child = await _create_batch(
        tx,
        phase=batch.phase,
        quantity=qty,
        status=batch.status,
        variety=batch.variety,
        size=batch.size,
        planted_at=batch.planted_at,
        location_id=body.destination,
        supplier_id=batch.supplier_id,
        transplanted_from=batch.id,
        notes=body.note,
    )
    await tx.update_batch(batch, expect_quantity=available, quantity=available - qty)

    tx.add(BatchAncestry(
        org_id=tx.org_id,
        parent_batch_id=batch.id,
        child_batch_id=child.id,
        proportion=qty / available,
        kind="split",
        created_at=tx.now,
    ))
    record_event(
        tx, batch, "MOVE_PARTIAL",
        delta=-qty,
        note=body.note,
        units_moved=qty,
        quantity_before=available,
        new_quantity=batch.quantity,
        split_batch_id=child.id,
        split_batch_number=child.batch_number,
        to_location_id=body.destination,
        spaced=body.spaced,
    )
    record_event(
        tx, child, "MOVE_IN",
        delta=qty,
        note=body.note,
        quantity=qty,
        from_batch_id=batch.id,
        from_batch_number=batch.batch_number,
        from_location_id=batch.location_id,
    )
    logger.info(
        "Split %d units of batch %s (%s) into %s (%s) at %s [request %s]",
        qty, batch.id, batch.batch_number, child.id, child.batch_number,
        body.destination, tx.request_id,
    )
    return {"movedAll": False, "newBatchId": child.id}


# ── Transplant / merge ───────────────────────────────────────

async def transplant(tx: TransactionContext, body: TransplantRequest) -> dict:
    """Consume units from one or two source batches into a new batch.

    Over-consumption follows `settings.transplant_overdraw_policy`:
    `clamp` takes what is there (the event records both the requested and
    the applied figure), `reject` raises 409.

    Returns {"id": new batch id, "batchNumber": ...}.
    """
    policy = settings.transplant_overdraw_policy
    consumed_sources = []

    for source in body.sources:
        batch = await tx.get_batch(source.batch_id)
        _ensure_live(batch)
        before = batch.quantity
        consumed = min(source.units_used, before)
        if consumed < source.units_used and policy == OVERDRAW_REJECT:
            raise ConflictError(
                f"Batch {batch.batch_number} has {before} units, {source.units_used} requested",
                error_code="INSUFFICIENT_QUANTITY",
                details={"batch_id": batch.id, "available": before, "requested": source.units_used},
            )
        await tx.update_batch(batch, expect_quantity=before, quantity=before - consumed)
        consumed_sources.append((batch, source, before, consumed))

    requested = body.new_batch
    primary = consumed_sources[0][0]
    new_batch = await _create_batch(
        tx,
        phase=requested.phase,
        quantity=requested.quantity,
        variety=requested.variety,
        size=requested.size,
        planted_at=requested.planted_at,
        location_id=requested.location_id,
        supplier_id=requested.supplier_id,
        transplanted_from=primary.id,
        notes=requested.notes,
    )

    total_consumed = sum(consumed for *_, consumed in consumed_sources)
    for batch, source, before, consumed in consumed_sources:
        if total_consumed:
            proportion = consumed / total_consumed
        else:
            proportion = 1 / len(consumed_sources)
        tx.add(BatchAncestry(
            org_id=tx.org_id,
            parent_batch_id=batch.id,
            child_batch_id=new_batch.id,
            proportion=proportion,
            kind="transplant",
            created_at=tx.now,
        ))
        record_event(
            tx, batch, "TRANSPLANT_USED",
            delta=-consumed,
            note=body.note,
            units_used=source.units_used,
            units_consumed=consumed,
            cells_per_pot=source.cells_per_pot,
            quantity_before=before,
            new_quantity=before - consumed,
            new_batch_id=new_batch.id,
            new_batch_number=new_batch.batch_number,
        )

    record_event(
        tx, new_batch, "TRANSPLANT_IN",
        delta=requested.quantity,
        note=body.note,
        quantity=requested.quantity,
        sources=[
            {"batch_id": batch.id, "units_consumed": consumed}
            for batch, _, _, consumed in consumed_sources
        ],
    )

    if body.archive_remainder:
        _ensure_can_archive(primary)
        # Status only: the remaining quantity stays on the source
        await tx.update_batch(primary, status="archived", archived_at=tx.now)
        record_event(
            tx, primary, "ARCHIVE",
            note=body.note,
            reason="archive_remainder",
            quantity_retained=primary.quantity,
            new_batch_id=new_batch.id,
        )

    logger.info(
        "Transplanted %d units from %s into batch %s (%s) with %d units [request %s]",
        total_consumed,
        ", ".join(batch.batch_number for batch, *_ in consumed_sources),
        new_batch.id, new_batch.batch_number, new_batch.quantity, tx.request_id,
    )
    return {"id": new_batch.id, "batchNumber": new_batch.batch_number}


# ── Dump ─────────────────────────────────────────────────────

async def dump(tx: TransactionContext, batch_id: str, body: DumpRequest) -> dict:
    """Write off `units` as loss.  Returns {"new_quantity", "archived"}."""
    new_quantity = await tx.decrement_quantity(batch_id, body.units)
    if new_quantity is None:
        # Guard rejected the update: work out why
        batch = await tx.get_batch(batch_id, for_update=False)
        _ensure_live(batch)
        raise ConflictError(
            f"Cannot dump {body.units} units: only {batch.quantity} available",
            error_code="INSUFFICIENT_QUANTITY",
            details={"batch_id": batch.id, "available": batch.quantity, "requested": body.units},
        )

    batch = await tx.get_batch(batch_id)
    record_event(
        tx, batch, "DUMP",
        delta=-body.units,
        note=body.notes,
        units=body.units,
        reason=body.reason,
        new_quantity=new_quantity,
    )

    archived = False
    # Sold is terminal: an emptied sold batch keeps its status
    can_archive = "archived" in STATUS_TRANSITIONS[batch.status]
    if new_quantity == 0 and body.archive_if_empty and can_archive:
        await tx.update_batch(batch, status="archived", archived_at=tx.now)
        record_event(
            tx, batch, "ARCHIVE",
            previous_quantity=0,
            reason=f"Emptied by dump: {body.reason}",
            cause="DUMP",
        )
        archived = True

    logger.info(
        "Dumped %d units from batch %s (%s), quantity now %d%s [request %s]",
        body.units, batch.id, batch.batch_number, new_quantity,
        ", archived" if archived else "", tx.request_id,
    )
    return {"new_quantity": new_quantity, "archived": archived}


# ── Adjust ───────────────────────────────────────────────────

async def adjust(tx: TransactionContext, batch_id: str, body: AdjustRequest) -> dict:
    """Apply a signed stock correction.  Returns {"previous_quantity", "new_quantity"}."""
    new_quantity = await tx.adjust_quantity(batch_id, body.quantity)
    if new_quantity is None:
        batch = await tx.get_batch(batch_id, for_update=False)
        _ensure_live(batch)
        raise ConflictError(
            f"Cannot adjust by {body.quantity}: only {batch.quantity} available",
            error_code="INSUFFICIENT_QUANTITY",
            details={"batch_id": batch.id, "available": batch.quantity, "adjustment": body.quantity},
        )

    batch = await tx.get_batch(batch_id)
    previous_quantity = new_quantity - body.quantity
    record_event(
        tx, batch, "ADJUSTMENT",
        delta=body.quantity,
        note=body.notes,
        reason=body.reason,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
    )
    logger.info(
        "Adjusted batch %s (%s) by %+d units, quantity now %d [request %s]",
        batch.id, batch.batch_number, body.quantity, new_quantity, tx.request_id,
    )
    return {"previous_quantity": previous_quantity, "new_quantity": new_quantity}


# ── Archive ──────────────────────────────────────────────────

async def archive(tx: TransactionContext, batch_id: str, reason: str | None = None) -> Batch:
    """Zero the batch and mark it archived.  A no-op on an archived, empty batch."""
    # Org-scoped read and org-scoped write: another tenant's id is a 404
    batch = await tx.get_batch(batch_id)
    previous_quantity = batch.quantity
    was_archived = batch.is_archived

    if was_archived and previous_quantity == 0:
        return batch

    _ensure_can_archive(batch)

    values = {"quantity": 0, "status": "archived"}
    if not was_archived:
        values["archived_at"] = tx.now
    await tx.update_batch(batch, expect_quantity=previous_quantity, **values)

    record_event(
        tx, batch, "ARCHIVE",
        delta=-previous_quantity,
        previous_quantity=previous_quantity,
        reason=reason,
    )
    logger.info(
        "Archived batch %s (%s), %d units written off [request %s]",
        batch.id, batch.batch_number, previous_quantity, tx.request_id,
    )
    return batch


# ── Status ───────────────────────────────────────────────────

async def set_status(
    tx: TransactionContext,
    batch_id: str,
    new_status: str,
    note: str | None = None,
) -> Batch:
    if new_status not in STATUSES:
        raise BusinessLogicError(
            f"status must be one of {', '.join(STATUSES)}", field="status"
        )

    batch = await tx.get_batch(batch_id)
    _ensure_live(batch)
    if batch.status == new_status:
        return batch

    if new_status not in STATUS_TRANSITIONS[batch.status]:
        raise ConflictError(
            f"Cannot change status from {batch.status} to {new_status}",
            error_code="INVALID_TRANSITION",
            details={"from": batch.status, "to": new_status},
        )

    if new_status == "archived":
        return await archive(tx, batch_id, reason=note)

    previous = batch.status
    await tx.update_batch(batch, status=new_status)
    record_event(tx, batch, "STATUS_CHANGE", note=note, **{"from": previous, "to": new_status})
    logger.info(
        "Batch %s (%s) status %s -> %s [request %s]",
        batch.id, batch.batch_number, previous, new_status, tx.request_id,
    )
    return batch
