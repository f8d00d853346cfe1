"""Pydantic schemas for batch flags."""

from pydantic import BaseModel, Field


class FlagUpdate(BaseModel):
    """Payload for PATCH /api/batches/{id}/flags."""
    key: str = Field(..., min_length=1, max_length=64)
    value: bool | int | float | str | None
    reason: str | None = Field(None, max_length=200)
    notes: str | None = None


class FlagHistoryEntry(BaseModel):
    key: str
    previous: bool | int | float | str | None
    value: bool | int | float | str | None
    reason: str | None
    notes: str | None
    by_user_id: str | None
    at: str


class FlagsOut(BaseModel):
    flags: dict[str, bool | int | float | str | None]
    history: list[FlagHistoryEntry] | None = None
