"""Aggregate model imports for Alembic auto-detection."""

# Core ledger
from app.models.tenant.batch import Batch  # noqa: F401
from app.models.tenant.batch_event import BatchEvent  # noqa: F401
from app.models.tenant.batch_ancestry import BatchAncestry  # noqa: F401
from app.models.tenant.batch_flag import BatchFlag  # noqa: F401

# Coordination
from app.models.tenant.batch_number_counter import BatchNumberCounter  # noqa: F401
from app.models.tenant.idempotency_record import IdempotencyRecord  # noqa: F401

# Reconciliation
from app.models.tenant.reconciliation_alert import ReconciliationAlert  # noqa: F401
