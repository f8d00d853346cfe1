"""BatchNumberCounter: per (org, phase, ISO week) sequence for batch numbers.

Only ever touched through a single `INSERT … ON CONFLICT DO UPDATE …
RETURNING` statement (TransactionContext.increment_counter), which makes the increment
atomic under concurrent check-ins in the same bucket.
"""

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class BatchNumberCounter(Base):
    __tablename__ = "batch_number_counters"
    __table_args__ = (
        UniqueConstraint("org_id", "phase_digit", "period", name="uq_batch_number_counter_bucket"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phase_digit: Mapped[int] = mapped_column(Integer, nullable=False)
    # "yyww", e.g. "2527"
    period: Mapped[str] = mapped_column(String(4), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
