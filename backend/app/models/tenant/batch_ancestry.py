"""BatchAncestry: weighted parent → child edges from splits and transplants.

`proportion` weights the edge: for a split, the share of the parent carved
out (qty / quantity before); for a transplant, consumed_i / Σ consumed.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class BatchAncestry(Base):
    __tablename__ = "batch_ancestry"
    __table_args__ = (
        UniqueConstraint("parent_batch_id", "child_batch_id", name="uq_batch_ancestry_edge"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Not a foreign key: the graph tolerates dangling parents (ghost nodes)
    parent_batch_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    child_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    proportion: Mapped[float | None] = mapped_column(Float)
    # split | transplant
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="split")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
