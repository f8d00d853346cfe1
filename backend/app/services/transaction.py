"""Ledger transaction runner.

Every batch mutation runs inside `run_ledger_transaction()`, which opens a
fresh session, begins a transaction, hands the operation a
`TransactionContext`, and commits only if the operation returns normally.
Any exception rolls the whole transaction back, so a batch row is never
left half-updated.

TransactionContext primitives:
  get_batch()           org-scoped read (row-locked where the dialect supports it)
  update_batch()        org-scoped write, optionally compare-and-set on quantity
  adjust_quantity()     single conditional UPDATE … RETURNING (no read first)
  decrement_quantity()  adjust_quantity() with a negative delta
  increment_counter()   atomic upsert for batch numbering
  add() / flush()       inserts (events, new batches, ancestry edges)

Transient failures (lock timeouts, serialization failures, a compare-and-set
that lost a race) are retried up to `settings.ledger_max_retries` times and
then surfaced as TransientStoreError (503).
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import and_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from app.config import settings
from app.database import utcnow
from app.middleware.exceptions import (
    PermissionDeniedError,
    ResourceNotFoundError,
    TransientStoreError,
)
from app.models.tenant.batch import Batch
from app.models.tenant.batch_number_counter import BatchNumberCounter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_BACKOFF_SECONDS = 0.05


class ConcurrentModificationError(TransientStoreError):
    """A compare-and-set lost to a concurrent writer; the transaction is retried."""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} was modified concurrently")
        self.error_code = "CONCURRENT_MODIFICATION"


class TransactionContext:
    """Tenant-scoped view of one open ledger transaction."""

    def __init__(
        self,
        session: AsyncSession,
        org_id: str,
        user_id: str | None = None,
        request_id: str | None = None,
    ):
        self.session = session
        self.org_id = org_id
        self.user_id = user_id
        self.request_id = request_id
        # One timestamp per transaction: every row written shares it
        self.now = utcnow()

    # ── Reads ────────────────────────────────────────────────

    async def find_batch(self, batch_id: str, *, for_update: bool = True) -> Batch | None:
        stmt = select(Batch).where(Batch.id == batch_id, Batch.org_id == self.org_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_batch(self, batch_id: str, *, for_update: bool = True) -> Batch:
        batch = await self.find_batch(batch_id, for_update=for_update)
        if batch is None:
            raise ResourceNotFoundError("Batch", batch_id)
        return batch

    async def batch_number_taken(self, batch_number: str) -> bool:
        result = await self.session.execute(
            select(Batch.id).where(
                Batch.org_id == self.org_id, Batch.batch_number == batch_number
            )
        )
        return result.first() is not None

    # ── Writes ───────────────────────────────────────────────

    def add(self, obj) -> None:
        self.session.add(obj)

    async def flush(self) -> None:
        await self.session.flush()

    async def update_batch(
        self,
        batch: Batch,
        *,
        expect_quantity: int | None = None,
        **values,
    ) -> None:
        """Write `values` to one batch, scoped by org in the predicate.

        With `expect_quantity`, the write only applies if the stored
        quantity still equals it (compare-and-set); otherwise the
        transaction is retried from the top.
        """
        values.setdefault("updated_at", self.now)
        conditions = [Batch.id == batch.id, Batch.org_id == self.org_id]
        if expect_quantity is not None:
            conditions.append(Batch.quantity == expect_quantity)

        result = await self.session.execute(
            update(Batch)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if expect_quantity is not None:
                raise ConcurrentModificationError(batch.id)
            raise PermissionDeniedError("Batch does not belong to this organisation")

        for key, value in values.items():
            set_committed_value(batch, key, value)

    async def adjust_quantity(self, batch_id: str, delta: int) -> int | None:
        """Add a signed `delta` only if the result stays >= 0 and the batch is live.

        Returns the new quantity, or None when the guard rejected the update
        (missing batch, archived batch, or a result below zero).
        """
        result = await self.session.execute(
            update(Batch)
            .where(
                Batch.id == batch_id,
                Batch.org_id == self.org_id,
                Batch.quantity + delta >= 0,
                Batch.status != "archived",
            )
            .values(quantity=Batch.quantity + delta, updated_at=self.now)
            .returning(Batch.quantity)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def decrement_quantity(self, batch_id: str, units: int) -> int | None:
        """Subtract `units` only if enough stock remains and the batch is live."""
        return await self.adjust_quantity(batch_id, -units)

    async def increment_counter(self, phase_digit: int, period: str) -> int:
        """Atomically bump and return the (org, phase, period) sequence."""
        dialect = self.session.bind.dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise TransientStoreError(f"Atomic counter not supported on {dialect}")

        stmt = insert(BatchNumberCounter).values(
            org_id=self.org_id, phase_digit=phase_digit, period=period, value=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["org_id", "phase_digit", "period"],
            set_={"value": BatchNumberCounter.value + 1},
        ).returning(BatchNumberCounter.value)

        try:
            result = await self.session.execute(stmt)
        except OperationalError as exc:
            raise TransientStoreError("Batch number sequence unavailable") from exc
        return int(result.scalar_one())


async def run_ledger_transaction(
    session_factory: async_sessionmaker,
    work: Callable[[TransactionContext], Awaitable[T]],
    *,
    org_id: str,
    user_id: str | None = None,
    request_id: str | None = None,
    max_retries: int | None = None,
) -> T:
    """Run `work` in one atomic transaction, retrying transient failures."""
    retries = settings.ledger_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        attempt += 1
        try:
            async with session_factory() as session:
                async with session.begin():
                    tx = TransactionContext(
                        session, org_id=org_id, user_id=user_id, request_id=request_id
                    )
                    return await work(tx)
        except (OperationalError, TransientStoreError) as exc:
            if attempt > retries:
                if isinstance(exc, TransientStoreError):
                    raise
                raise TransientStoreError() from exc
            logger.warning(
                "Ledger transaction attempt %d failed (%s), retrying",
                attempt, exc.__class__.__name__,
            )
            await asyncio.sleep(_RETRY_BACKOFF_SECONDS * attempt)
