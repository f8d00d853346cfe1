"""Batch router: intake, quantity ledger mutations, history and lineage.

Endpoints:
    GET    /api/batches/                        List batches (with filters)
    POST   /api/batches/check-in                Create a batch from incoming stock
    POST   /api/batches/transplant              Merge 1–2 sources into a new batch
    GET    /api/batches/{batch_id}              Single batch detail
    GET    /api/batches/{batch_id}/history      Audit events, oldest first
    GET    /api/batches/{batch_id}/movements    Running-balance stock ledger
    GET    /api/batches/{batch_id}/ancestry     Ancestors + descendant tree
    POST   /api/batches/{batch_id}/move         Move, or split part to a new batch
    POST   /api/batches/{batch_id}/dump         Write off units as loss
    POST   /api/batches/{batch_id}/adjust       Signed stock correction
    POST   /api/batches/{batch_id}/archive      Zero and archive
    PATCH  /api/batches/{batch_id}/status       Status transition
    GET    /api/batches/{batch_id}/flags        Current flags (?history=true)
    PATCH  /api/batches/{batch_id}/flags        Set one flag

Every mutation accepts an `X-Request-Id` idempotency key.  A retried call
with the same key and body returns the stored response byte-for-byte
without re-executing.
"""

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.deps import Actor, require_permission
from app.database import get_db, get_session_factory
from app.middleware.exceptions import ResourceNotFoundError
from app.models.tenant.batch import Batch
from app.schemas.batch import (
    AdjustRequest,
    AdjustResult,
    AncestryOut,
    ArchiveRequest,
    BatchEventOut,
    BatchOut,
    CheckInRequest,
    DumpRequest,
    DumpResult,
    MoveRequest,
    MoveResult,
    StatusChangeRequest,
    StockMovementOut,
    TransplantRequest,
    TransplantResult,
)
from app.schemas.common import PaginatedResponse
from app.schemas.flags import FlagsOut, FlagUpdate
from app.services import flags as flag_store
from app.services import ledger
from app.services.ancestry import AncestryGraph
from app.services.reconciliation import stock_movements
from app.services.transaction import TransactionContext
from app.utils.audit import history
from app.utils.cache import cached, invalidate_cache
from app.utils.idempotency import IdempotencyGuard, request_fingerprint

router = APIRouter()


# ── Guarded mutation plumbing ────────────────────────────────

async def _guarded(
    *,
    scope: str,
    actor: Actor,
    session_factory: async_sessionmaker,
    request_id: str | None,
    payload: dict,
    op,
) -> Response:
    """Run `op` under the idempotency guard and return its stored JSON body."""
    guard = IdempotencyGuard(
        session_factory, org_id=actor.org_id, scope=scope, user_id=actor.user_id
    )
    result = await guard.execute(request_id, op, fingerprint=request_fingerprint(payload))
    if not result.replayed:
        await invalidate_cache("batch:*")
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type="application/json",
    )


def _batch_body(batch: Batch) -> dict:
    return BatchOut.model_validate(batch).model_dump(mode="json")


# ── List batches ─────────────────────────────────────────────

@router.get("/", response_model=PaginatedResponse[BatchOut])
async def list_batches(
    phase: str | None = Query(None),
    batch_status: str | None = Query(None, alias="status"),
    location_id: str | None = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    stmt = select(Batch).where(Batch.org_id == actor.org_id)
    if phase:
        stmt = stmt.where(Batch.phase == phase)
    if batch_status:
        stmt = stmt.where(Batch.status == batch_status)
    elif not include_archived:
        stmt = stmt.where(Batch.status != "archived")
    if location_id:
        stmt = stmt.where(Batch.location_id == location_id)

    total = (
        await db.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar() or 0
    result = await db.execute(
        stmt.order_by(Batch.created_at.desc(), Batch.batch_number.desc())
        .limit(limit)
        .offset(offset)
    )
    return PaginatedResponse[BatchOut](
        items=[BatchOut.model_validate(b) for b in result.scalars().all()],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── Check-in ─────────────────────────────────────────────────

@router.post("/check-in", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
async def check_in(
    body: CheckInRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    async def op(tx: TransactionContext):
        batch = await ledger.check_in(tx, body)
        return status.HTTP_201_CREATED, _batch_body(batch)

    return await _guarded(
        scope="batches.check_in",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload=body.model_dump(mode="json"),
        op=op,
    )


# ── Transplant ───────────────────────────────────────────────

@router.post("/transplant", response_model=TransplantResult, status_code=status.HTTP_201_CREATED)
async def transplant(
    body: TransplantRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    """Consume units from one or two source batches into a new batch."""
    async def op(tx: TransactionContext):
        return status.HTTP_201_CREATED, await ledger.transplant(tx, body)

    return await _guarded(
        scope="batches.transplant",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload=body.model_dump(mode="json", by_alias=True),
        op=op,
    )


# ── Single batch ─────────────────────────────────────────────

@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    batch = (
        await db.execute(
            select(Batch).where(Batch.id == batch_id, Batch.org_id == actor.org_id)
        )
    ).scalar_one_or_none()
    if not batch:
        raise ResourceNotFoundError("Batch", batch_id)
    return batch


@router.get("/{batch_id}/history", response_model=list[BatchEventOut])
@cached(ttl=120, prefix="batch", key_builder=lambda *a, **kw: f"history:{kw['batch_id']}")
async def get_history(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    events = await history(db, actor.org_id, batch_id)
    if not events:
        # Every batch has a creation event; none means no such batch here
        raise ResourceNotFoundError("Batch", batch_id)
    return [BatchEventOut.model_validate(e).model_dump(mode="json") for e in events]


@router.get("/{batch_id}/movements", response_model=list[StockMovementOut])
async def get_movements(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    return await stock_movements(db, actor.org_id, batch_id)


@router.get("/{batch_id}/ancestry", response_model=AncestryOut)
@cached(ttl=120, prefix="batch", key_builder=lambda *a, **kw: f"ancestry:{kw['batch_id']}")
async def get_ancestry(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    graph = await AncestryGraph.load_lineage(db, actor.org_id, batch_id)
    node = graph.nodes.get(batch_id)
    if node is None or node.ghost:
        raise ResourceNotFoundError("Batch", batch_id)

    ancestors = graph.ancestors_of(batch_id)
    descendants = graph.descendants_of(batch_id)

    involved = {batch_id} | {a["id"] for a in ancestors}
    stack = [descendants]
    while stack:
        tree = stack.pop()
        involved.add(tree["id"])
        stack.extend(tree["children"])

    return AncestryOut(
        batch_id=batch_id,
        ancestors=ancestors,
        descendants=descendants,
        issues=[
            issue for issue in graph.issues
            if issue["parent_batch_id"] in involved or issue["child_batch_id"] in involved
        ],
    ).model_dump(mode="json")


# ── Ledger mutations ─────────────────────────────────────────

@router.post("/{batch_id}/move", response_model=MoveResult, status_code=status.HTTP_201_CREATED)
async def move_batch(
    batch_id: str,
    body: MoveRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    """Move the whole batch, or split `quantity` units off into a new batch."""
    async def op(tx: TransactionContext):
        return status.HTTP_201_CREATED, await ledger.move_batch(tx, batch_id, body)

    return await _guarded(
        scope="batches.move",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, **body.model_dump(mode="json")},
        op=op,
    )


@router.post("/{batch_id}/dump", response_model=DumpResult)
async def dump_batch(
    batch_id: str,
    body: DumpRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    """Write off units; 409 if more than the batch holds."""
    async def op(tx: TransactionContext):
        return status.HTTP_200_OK, await ledger.dump(tx, batch_id, body)

    return await _guarded(
        scope="batches.dump",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, **body.model_dump(mode="json")},
        op=op,
    )


@router.post("/{batch_id}/adjust", response_model=AdjustResult)
async def adjust_batch(
    batch_id: str,
    body: AdjustRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    """Signed stock correction; 409 if it would take the batch below zero."""
    async def op(tx: TransactionContext):
        return status.HTTP_200_OK, await ledger.adjust(tx, batch_id, body)

    return await _guarded(
        scope="batches.adjust",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, **body.model_dump(mode="json")},
        op=op,
    )


@router.post("/{batch_id}/archive", response_model=BatchOut)
async def archive_batch(
    batch_id: str,
    body: ArchiveRequest | None = None,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.archive")),
):
    reason = body.reason if body else None

    async def op(tx: TransactionContext):
        batch = await ledger.archive(tx, batch_id, reason=reason)
        return status.HTTP_200_OK, _batch_body(batch)

    return await _guarded(
        scope="batches.archive",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, "reason": reason},
        op=op,
    )


@router.patch("/{batch_id}/status", response_model=BatchOut)
async def change_status(
    batch_id: str,
    body: StatusChangeRequest,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("batch.write")),
):
    async def op(tx: TransactionContext):
        batch = await ledger.set_status(tx, batch_id, body.status, note=body.note)
        return status.HTTP_200_OK, _batch_body(batch)

    return await _guarded(
        scope="batches.status",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, **body.model_dump(mode="json")},
        op=op,
    )


# ── Flags ────────────────────────────────────────────────────

@router.get("/{batch_id}/flags", response_model=FlagsOut, response_model_exclude_none=True)
async def get_flags(
    batch_id: str,
    include_history: bool = Query(False, alias="history"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_permission("batch.read")),
):
    return await flag_store.get_flags(
        db, actor.org_id, batch_id, include_history=include_history
    )


@router.patch("/{batch_id}/flags", response_model=FlagsOut)
async def set_flag(
    batch_id: str,
    body: FlagUpdate,
    request_id: str | None = Header(None, alias="X-Request-Id"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    actor: Actor = Depends(require_permission("flags.write")),
):
    async def op(tx: TransactionContext):
        flags = await flag_store.set_flag(
            tx, batch_id, body.key, body.value, reason=body.reason, notes=body.notes
        )
        return status.HTTP_200_OK, flags

    return await _guarded(
        scope="batches.flags",
        actor=actor,
        session_factory=session_factory,
        request_id=request_id,
        payload={"batch_id": batch_id, **body.model_dump(mode="json")},
        op=op,
    )
