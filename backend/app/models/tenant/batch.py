"""Batch: a cohort of plants under unified handling.

A Batch is created at check-in (or carved out of another batch by a split
or a transplant) and is mutated only inside a ledger transaction.  Its
`quantity` column is the canonical stock figure; the BatchEvent stream is
the audit record that reconciles against it.

Lifecycle:  growing → ready → sold | archived
"""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint, Date, DateTime, ForeignKey, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utcnow

PHASES = ("propagation", "plugs", "potting")
STATUSES = ("growing", "ready", "sold", "archived")
TERMINAL_STATUSES = ("sold", "archived")


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("org_id", "batch_number", name="uq_batches_org_number"),
        CheckConstraint("quantity >= 0", name="ck_batches_quantity_non_negative"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Human-readable, unique per tenant: 1-2527-00001 or B-2025-X7K2Q
    batch_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # phase_week | legacy
    number_scheme: Mapped[str] = mapped_column(String(20), default="phase_week")

    # ── Lifecycle ────────────────────────────────────────────
    # propagation | plugs | potting
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    # growing | ready | sold | archived
    status: Mapped[str] = mapped_column(String(20), default="growing", index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Snapshot at creation, never updated
    initial_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Plant details ────────────────────────────────────────
    variety: Mapped[str | None] = mapped_column(String(120))
    size: Mapped[str | None] = mapped_column(String(60))
    planted_at: Mapped[date | None] = mapped_column(Date)

    # ── Placement ────────────────────────────────────────────
    location_id: Mapped[str | None] = mapped_column(String(36), index=True)
    supplier_id: Mapped[str | None] = mapped_column(String(36))

    # ── Lineage ──────────────────────────────────────────────
    # Primary parent (split source or first transplant source).  Full
    # weighted lineage lives in batch_ancestry.
    transplanted_from: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batches.id"), index=True
    )

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Relationships ────────────────────────────────────────
    # lazy="select" (default); ledger code always queries explicitly
    events = relationship(
        "BatchEvent", back_populates="batch",
        order_by="BatchEvent.seq",
    )
    flags = relationship("BatchFlag", back_populates="batch")

    @property
    def ancestry_from_id(self) -> str | None:
        """Alias used by graph walkers."""
        return self.transplanted_from

    @property
    def is_archived(self) -> bool:
        return self.status == "archived"
