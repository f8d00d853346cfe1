"""Batch flags: named scalar attributes with a change history.

Current values are rows in batch_flags; each change also appends a
FLAG_CHANGE event to the batch audit log, which serves as the history.
Flags never touch quantity.
"""

import logging
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import BusinessLogicError, ResourceNotFoundError
from app.models.tenant.batch import Batch
from app.models.tenant.batch_flag import BatchFlag
from app.services.transaction import TransactionContext
from app.utils.audit import history, record_event

logger = logging.getLogger(__name__)

FLAG_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")

FlagValue = bool | int | float | str | None


async def _flag_map(db: AsyncSession, org_id: str, batch_id: str) -> dict[str, FlagValue]:
    result = await db.execute(
        select(BatchFlag.key, BatchFlag.value)
        .where(BatchFlag.org_id == org_id, BatchFlag.batch_id == batch_id)
        .order_by(BatchFlag.key)
    )
    return dict(result.all())


async def get_flags(
    db: AsyncSession,
    org_id: str,
    batch_id: str,
    *,
    include_history: bool = False,
) -> dict:
    """Return {"flags": {...}} and, if asked, {"history": [...]}, oldest first."""
    exists = (
        await db.execute(
            select(Batch.id).where(Batch.id == batch_id, Batch.org_id == org_id)
        )
    ).first()
    if exists is None:
        raise ResourceNotFoundError("Batch", batch_id)

    out: dict = {"flags": await _flag_map(db, org_id, batch_id)}
    if include_history:
        events = await history(db, org_id, batch_id, event_types={"FLAG_CHANGE"})
        out["history"] = [
            {
                "key": e.payload.get("key"),
                "previous": e.payload.get("previous"),
                "value": e.payload.get("value"),
                "reason": e.payload.get("reason"),
                "notes": e.note,
                "by_user_id": e.by_user_id,
                "at": e.at.isoformat(),
            }
            for e in events
        ]
    return out


async def set_flag(
    tx: TransactionContext,
    batch_id: str,
    key: str,
    value: FlagValue,
    *,
    reason: str | None = None,
    notes: str | None = None,
) -> dict:
    """Set one flag and return the batch's full flag map.

    Setting a flag to its current value writes nothing.
    """
    if not FLAG_KEY_RE.match(key):
        raise BusinessLogicError(
            "Flag keys are lowercase letters, digits and underscores", field="key"
        )

    batch = await tx.get_batch(batch_id)
    flag = (
        await tx.session.execute(
            select(BatchFlag).where(
                BatchFlag.org_id == tx.org_id,
                BatchFlag.batch_id == batch.id,
                BatchFlag.key == key,
            )
        )
    ).scalar_one_or_none()

    previous = flag.value if flag is not None else None
    if flag is not None and previous == value and type(previous) is type(value):
        return {"flags": await _flag_map(tx.session, tx.org_id, batch.id)}

    if flag is None:
        tx.add(BatchFlag(
            org_id=tx.org_id,
            batch_id=batch.id,
            key=key,
            value=value,
            updated_by=tx.user_id,
            updated_at=tx.now,
        ))
    else:
        flag.value = value
        flag.updated_by = tx.user_id
        flag.updated_at = tx.now

    record_event(
        tx, batch, "FLAG_CHANGE",
        note=notes,
        key=key,
        previous=previous,
        value=value,
        reason=reason,
    )
    await tx.flush()
    logger.info(
        "Flag %s on batch %s (%s): %r -> %r [request %s]",
        key, batch.id, batch.batch_number, previous, value, tx.request_id,
    )
    return {"flags": await _flag_map(tx.session, tx.org_id, batch.id)}
