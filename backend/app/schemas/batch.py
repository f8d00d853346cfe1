"""Pydantic schemas for batch intake and ledger mutations.

Mutation payloads keep the wire names clients already send
(`batchId`, `unitsUsed`, `archiveRemainder`, …); Python code uses the
snake_case attribute names.
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.tenant.batch import PHASES


def _check_phase(value: str) -> str:
    if value not in PHASES:
        raise ValueError(f"phase must be one of {', '.join(PHASES)}")
    return value


# ── Check-in ─────────────────────────────────────────────────

class CheckInRequest(BaseModel):
    """Payload for POST /api/batches/check-in."""
    phase: str
    quantity: int = Field(..., gt=0)
    variety: str | None = Field(None, max_length=120)
    size: str | None = Field(None, max_length=60)
    location_id: str | None = None
    supplier_id: str | None = None
    planted_at: date | None = None
    notes: str | None = None

    _phase = field_validator("phase")(_check_phase)


# ── Move / split ─────────────────────────────────────────────

class MoveRequest(BaseModel):
    """Move a whole batch, or split `quantity` units off to `destination`."""
    destination: str = Field(..., min_length=1)
    # Omitted → move everything
    quantity: int | None = None
    spaced: bool | None = None
    note: str | None = None


class MoveResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    moved_all: bool = Field(..., alias="movedAll")
    new_batch_id: str | None = Field(None, alias="newBatchId")


# ── Transplant / merge ───────────────────────────────────────

class TransplantSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_id: str = Field(..., alias="batchId")
    units_used: int = Field(..., alias="unitsUsed", gt=0)
    cells_per_pot: int | None = Field(None, alias="cellsPerPot", ge=1)


class NewBatchSpec(BaseModel):
    phase: str
    quantity: int = Field(..., gt=0)
    variety: str | None = Field(None, max_length=120)
    size: str | None = Field(None, max_length=60)
    location_id: str | None = Field(None, alias="locationId")
    supplier_id: str | None = Field(None, alias="supplierId")
    planted_at: date | None = Field(None, alias="plantedAt")
    notes: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    _phase = field_validator("phase")(_check_phase)


class TransplantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sources: list[TransplantSource] = Field(..., min_length=1, max_length=2)
    new_batch: NewBatchSpec = Field(..., alias="newBatch")
    archive_remainder: bool = Field(False, alias="archiveRemainder")
    note: str | None = None

    @field_validator("sources")
    @classmethod
    def distinct_sources(cls, sources: list[TransplantSource]):
        ids = [s.batch_id for s in sources]
        if len(set(ids)) != len(ids):
            raise ValueError("Transplant sources must be distinct batches")
        return sources


class TransplantResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    batch_number: str = Field(..., alias="batchNumber")


# ── Dump / adjust / archive / status ─────────────────────────

class DumpRequest(BaseModel):
    units: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=200)
    archive_if_empty: bool = True
    notes: str | None = None


class DumpResult(BaseModel):
    new_quantity: int
    archived: bool = False


class AdjustRequest(BaseModel):
    """Signed stock correction: positive adds units, negative removes them."""

    quantity: int
    reason: str = Field(..., min_length=1, max_length=200)
    notes: str | None = None

    @field_validator("quantity")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("quantity must not be zero")
        return v


class AdjustResult(BaseModel):
    previous_quantity: int
    new_quantity: int


class ArchiveRequest(BaseModel):
    reason: str | None = Field(None, max_length=200)


class StatusChangeRequest(BaseModel):
    status: str
    note: str | None = None


# ── Response ─────────────────────────────────────────────────

class BatchOut(BaseModel):
    id: str
    batch_number: str
    number_scheme: str
    phase: str
    status: str
    quantity: int
    initial_quantity: int
    variety: str | None
    size: str | None
    planted_at: date | None
    location_id: str | None
    supplier_id: str | None
    transplanted_from: str | None
    notes: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    archived_at: datetime | None

    model_config = {"from_attributes": True}


class BatchEventOut(BaseModel):
    id: str
    batch_id: str
    type: str
    payload: dict
    note: str | None
    by_user_id: str | None
    request_id: str | None
    at: datetime

    model_config = {"from_attributes": True}


class StockMovementOut(BaseModel):
    """One line of the running-balance ledger for a batch."""
    at: datetime
    type: str
    quantity: int  # signed
    balance: int
    event_id: str | None = None
    note: str | None = None


# ── Ancestry ─────────────────────────────────────────────────

class AncestorOut(BaseModel):
    id: str
    batch_number: str | None
    depth: int
    proportion: float | None = None
    ghost: bool = False


class DescendantNode(BaseModel):
    id: str
    batch_number: str | None
    proportion: float | None = None
    ghost: bool = False
    children: list["DescendantNode"] = []


class AncestryOut(BaseModel):
    batch_id: str
    ancestors: list[AncestorOut]
    descendants: DescendantNode
    issues: list[dict] = []
