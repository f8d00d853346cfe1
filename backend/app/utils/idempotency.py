"""Idempotency guard for mutating ledger calls.

Wraps an entire ledger transaction so that, for a given request token,
the mutation executes at most once and every caller sees the same
response for the lifetime of the record.

Protocol (per org + scope + key):
  1. Claim:   conditional insert of a pending placeholder.  The unique
              constraint picks exactly one winner.
  2. Winner:  runs the operation; the response snapshot is written to the
              placeholder *inside the same transaction* as the mutation,
              so a commit always carries its result.  If the operation
              fails the placeholder is deleted and the error propagates.
  3. Loser:   polls until the winner completes (bounded by
              `idempotency_wait_timeout_seconds`) and replays the stored
              snapshot.  If the winner failed or its lease expired, the
              claim is retried once.

Replay is not an error path: it returns the original status and body text.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import utcnow
from app.middleware.exceptions import (
    BusinessLogicError,
    ConflictError,
    OutcomeUnknownError,
)
from app.models.tenant.idempotency_record import IdempotencyRecord
from app.services.transaction import TransactionContext, run_ledger_transaction

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Request-Id"
MAX_KEY_LENGTH = 128

GuardedOperation = Callable[[TransactionContext], Awaitable[tuple[int, dict]]]


@dataclass(frozen=True)
class GuardedResult:
    status_code: int
    body: str  # canonical JSON text
    replayed: bool = False

    def json(self) -> dict:
        return json.loads(self.body)


def canonical_json(body: dict) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def request_fingerprint(payload: dict) -> str:
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()


def _insert_for(session: AsyncSession):
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class IdempotencyGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        org_id: str,
        scope: str,
        user_id: str | None = None,
    ):
        self.session_factory = session_factory
        self.org_id = org_id
        self.scope = scope
        self.user_id = user_id

    async def execute(
        self,
        key: str | None,
        op: GuardedOperation,
        *,
        fingerprint: str | None = None,
        timeout: float | None = None,
    ) -> GuardedResult:
        """Run `op` at most once per key and return its (replayable) result."""
        timeout = settings.request_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._execute(key, op, fingerprint), timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Guarded %s call timed out after %.1fs (key=%s)", self.scope, timeout, key
            )
            raise OutcomeUnknownError()

    async def _execute(
        self,
        key: str | None,
        op: GuardedOperation,
        fingerprint: str | None,
    ) -> GuardedResult:
        if not key:
            return await self._run(op, record_id=None, owner_token=None, key=None)

        if len(key) > MAX_KEY_LENGTH:
            raise BusinessLogicError(
                f"{IDEMPOTENCY_HEADER} must be at most {MAX_KEY_LENGTH} characters",
                field=IDEMPOTENCY_HEADER,
            )

        for _ in range(2):
            record_id, owner_token = await self._claim(key, fingerprint)
            if owner_token is not None:
                return await self._run(op, record_id=record_id, owner_token=owner_token, key=key)

            replay = await self._wait_for_winner(key, fingerprint)
            if replay is not None:
                logger.info("Replayed %s result for key %s", self.scope, key)
                return replay

        raise ConflictError(
            "A request with this key is still in progress",
            error_code="IDEMPOTENCY_IN_PROGRESS",
            details={"key": key, "retryable": True},
        )

    # ── Claim / release ──────────────────────────────────────

    async def _claim(self, key: str, fingerprint: str | None) -> tuple[str | None, str | None]:
        """Try to become the executor for `key`.  Returns (record_id, owner_token)."""
        now = utcnow()
        owner_token = str(uuid.uuid4())
        lease = now + timedelta(seconds=settings.idempotency_lock_seconds)

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.org_id == self.org_id,
                        IdempotencyRecord.scope == self.scope,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.expires_at < now,
                    )
                )

                insert = _insert_for(session)
                record_id = str(uuid.uuid4())
                result = await session.execute(
                    insert(IdempotencyRecord)
                    .values(
                        id=record_id,
                        org_id=self.org_id,
                        scope=self.scope,
                        key=key,
                        fingerprint=fingerprint,
                        state="pending",
                        owner_token=owner_token,
                        locked_until=lease,
                        created_at=now,
                        expires_at=now + timedelta(seconds=settings.idempotency_ttl_seconds),
                    )
                    .on_conflict_do_nothing(index_elements=["org_id", "scope", "key"])
                    .returning(IdempotencyRecord.id)
                )
                if result.scalar_one_or_none() is not None:
                    return record_id, owner_token

                # Existing record: take it over only if the winner's lease ran out
                taken = await session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.org_id == self.org_id,
                        IdempotencyRecord.scope == self.scope,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.state == "pending",
                        IdempotencyRecord.locked_until < now,
                    )
                    .values(owner_token=owner_token, locked_until=lease, fingerprint=fingerprint)
                    .returning(IdempotencyRecord.id)
                    .execution_options(synchronize_session=False)
                )
                taken_id = taken.scalar_one_or_none()
                if taken_id is not None:
                    logger.warning("Took over stale %s execution for key %s", self.scope, key)
                    return taken_id, owner_token
        return None, None

    async def _release(self, record_id: str, owner_token: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.id == record_id,
                        IdempotencyRecord.owner_token == owner_token,
                        IdempotencyRecord.state == "pending",
                    )
                )

    # ── Execution ────────────────────────────────────────────

    async def _run(
        self,
        op: GuardedOperation,
        *,
        record_id: str | None,
        owner_token: str | None,
        key: str | None,
    ) -> GuardedResult:
        async def work(tx: TransactionContext) -> GuardedResult:
            status_code, body = await op(tx)
            text = canonical_json(body)
            if record_id is not None:
                stored = await tx.session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.id == record_id,
                        IdempotencyRecord.owner_token == owner_token,
                        IdempotencyRecord.state == "pending",
                    )
                    .values(
                        state="completed",
                        status_code=status_code,
                        response_body=text,
                        completed_at=tx.now,
                        expires_at=tx.now + timedelta(seconds=settings.idempotency_ttl_seconds),
                    )
                    .execution_options(synchronize_session=False)
                )
                if stored.rowcount != 1:
                    # Lease was taken over; abort so the mutation can't apply twice
                    raise ConflictError(
                        "Idempotency lease lost to another execution",
                        error_code="IDEMPOTENCY_LEASE_LOST",
                        details={"key": key, "retryable": True},
                    )
            return GuardedResult(status_code=status_code, body=text)

        try:
            return await run_ledger_transaction(
                self.session_factory,
                work,
                org_id=self.org_id,
                user_id=self.user_id,
                request_id=key,
            )
        except BaseException:
            if record_id is not None:
                await self._release(record_id, owner_token)
            raise

    async def _wait_for_winner(self, key: str, fingerprint: str | None) -> GuardedResult | None:
        """Poll until the winning execution stores its result.

        Returns the replayed result, or None when the claim should be
        retried (winner failed and released, or its lease expired).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.idempotency_wait_timeout_seconds

        while True:
            async with self.session_factory() as session:
                record = (
                    await session.execute(
                        select(IdempotencyRecord).where(
                            IdempotencyRecord.org_id == self.org_id,
                            IdempotencyRecord.scope == self.scope,
                            IdempotencyRecord.key == key,
                        )
                    )
                ).scalar_one_or_none()

            if record is None:
                return None
            if record.state == "completed":
                if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
                    raise ConflictError(
                        "Idempotency key was already used with a different request body",
                        error_code="IDEMPOTENCY_KEY_REUSED",
                        details={"key": key},
                    )
                return GuardedResult(
                    status_code=record.status_code,
                    body=record.response_body,
                    replayed=True,
                )
            if record.locked_until < utcnow():
                return None
            if loop.time() >= deadline:
                raise ConflictError(
                    "A request with this key is still in progress",
                    error_code="IDEMPOTENCY_IN_PROGRESS",
                    details={"key": key, "retryable": True},
                )
            await asyncio.sleep(settings.idempotency_poll_interval_seconds)


async def purge_expired(session: AsyncSession) -> int:
    """Delete expired idempotency records.  Returns the number removed."""
    result = await session.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < utcnow())
    )
    return result.rowcount or 0
