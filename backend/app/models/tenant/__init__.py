"""Ledger models.  Every table is row-scoped by `org_id`."""

from app.models.tenant.batch import Batch
from app.models.tenant.batch_event import BatchEvent
from app.models.tenant.batch_ancestry import BatchAncestry
from app.models.tenant.batch_flag import BatchFlag
from app.models.tenant.batch_number_counter import BatchNumberCounter
from app.models.tenant.idempotency_record import IdempotencyRecord
from app.models.tenant.reconciliation_alert import ReconciliationAlert

__all__ = [
    "Batch", "BatchEvent", "BatchAncestry", "BatchFlag",
    "BatchNumberCounter", "IdempotencyRecord", "ReconciliationAlert",
]
