"""ReconciliationAlert: flags a batch whose ledger does not add up.

Each alert represents a single detected discrepancy, categorised by type
and severity.  Alerts are created by a reconciliation run and remain open
until manually reviewed or auto-resolved on the next run.

Types:
  quantity_drift   initial_quantity + Σ event deltas ≠ quantity
  ancestry_ghost   a lineage edge points at a batch that does not exist
  ancestry_cycle   a batch is reachable from itself through lineage edges

Lifecycle:  open → acknowledged → resolved | dismissed
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class ReconciliationAlert(Base):
    __tablename__ = "reconciliation_alerts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # ── Classification ───────────────────────────────────────
    # quantity_drift | ancestry_ghost | ancestry_cycle
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # critical | high | medium | low
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # ── Mismatch details ─────────────────────────────────────
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # The two values that don't match (quantity_drift only)
    expected_value: Mapped[int | None] = mapped_column(Integer)
    actual_value: Mapped[int | None] = mapped_column(Integer)
    variance: Mapped[int | None] = mapped_column(Integer)

    # ── Entity references ────────────────────────────────────
    # {"batch_id": "...", "batch_number": "...", "parent_batch_id": "..."}
    entity_refs: Mapped[dict | None] = mapped_column(JSON)

    # ── Status ───────────────────────────────────────────────
    # open | acknowledged | resolved | dismissed
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    resolved_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    resolution_note: Mapped[str | None] = mapped_column(Text)

    # ── Run metadata ─────────────────────────────────────────
    run_id: Mapped[str | None] = mapped_column(String(36), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
