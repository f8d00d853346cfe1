"""BatchEvent: append-only audit log for batch state changes.

Rows are inserted in the same transaction as the batch mutation they
describe and are never updated or deleted by the ledger.  The payload of
every quantity-changing event carries a signed `delta` equal to the change
actually applied to `batches.quantity`.

Payload by type:
  CHECKIN / MOVE_IN / TRANSPLANT_IN:  {"quantity": 40, "delta": 40, ...}  (creation)
  MOVE:              {"to_location_id": "...", "units_moved": 100, "delta": 0}
  MOVE_PARTIAL:      {"units_moved": 40, "split_batch_id": "...", "delta": -40}
  TRANSPLANT_USED:   {"units_used": 50, "units_consumed": 50, "delta": -50}
  DUMP:              {"units": 10, "reason": "pest", "new_quantity": 50, "delta": -10}
  ARCHIVE:           {"previous_quantity": 50, "reason": "...", "delta": -50}
  STATUS_CHANGE:     {"from": "growing", "to": "ready", "delta": 0}
  FLAG_CHANGE:       {"key": "pest", "previous": false, "value": true, "delta": 0}
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utcnow

CREATION_EVENT_TYPES = frozenset({"CHECKIN", "MOVE_IN", "TRANSPLANT_IN"})


class BatchEvent(Base):
    __tablename__ = "batch_events"

    # Monotonic insertion order; `at` alone cannot order events that share
    # a transaction timestamp.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )

    # CHECKIN | MOVE | MOVE_PARTIAL | MOVE_IN | TRANSPLANT_USED | TRANSPLANT_IN |
    # DUMP | ARCHIVE | STATUS_CHANGE | FLAG_CHANGE
    type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    note: Mapped[str | None] = mapped_column(Text)

    by_user_id: Mapped[str | None] = mapped_column(String(36))
    # Idempotency token of the request that produced this event
    request_id: Mapped[str | None] = mapped_column(String(128), index=True)
    at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )

    # ── Relationships ────────────────────────────────────────
    batch = relationship("Batch", back_populates="events")

    @property
    def delta(self) -> int:
        return int((self.payload or {}).get("delta", 0) or 0)

    @property
    def is_creation(self) -> bool:
        return self.type in CREATION_EVENT_TYPES
