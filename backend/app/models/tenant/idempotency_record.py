"""IdempotencyRecord: first-writer-wins record per client request token.

A placeholder row is inserted before the guarded operation runs (the
unique constraint decides the winner); the winner writes the response
snapshot in the same transaction as its mutation.  Rows expire after
`idempotency_ttl_seconds` and are purged by housekeeping.

Lifecycle:  pending → completed  (or deleted when the winner fails)
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("org_id", "scope", "key", name="uq_idempotency_scope_key"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Keys are scoped by tenant + route so a reused client header can't
    # collide across organisations or endpoints.
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    # sha256 of the canonical request body
    fingerprint: Mapped[str | None] = mapped_column(String(64))

    # pending | completed
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    # Lease owner; a takeover after a crash rotates this token
    owner_token: Mapped[str] = mapped_column(String(36), nullable=False)
    locked_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status_code: Mapped[int | None] = mapped_column(Integer)
    # Canonical JSON text returned verbatim on replay
    response_body: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
