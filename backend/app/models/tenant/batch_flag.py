"""BatchFlag: named boolean / enum / number attributes on a batch.

Current values live here (one row per batch + key); every change also
appends a FLAG_CHANGE BatchEvent, which is the flag history.  Flags are
independent of quantity and not part of the conservation invariants.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utcnow


class BatchFlag(Base):
    __tablename__ = "batch_flags"
    __table_args__ = (
        UniqueConstraint("batch_id", "key", name="uq_batch_flags_batch_key"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    # JSON-encoded scalar: bool | str | int | float
    value: Mapped[bool | str | int | float | None] = mapped_column(JSON)
    updated_by: Mapped[str | None] = mapped_column(String(36))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    batch = relationship("Batch", back_populates="flags")
