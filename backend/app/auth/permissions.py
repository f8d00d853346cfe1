"""Permission names for the batch ledger API.

Effective permissions are embedded in the JWT by the identity service, so
checks are token-only (no DB roundtrip).

Permission naming: `<resource>.<action>`; `*` grants everything.
"""

from __future__ import annotations


ALL_PERMISSIONS: set[str] = {
    "batch.read",             # view batches, history, lineage
    "batch.write",            # check-in, move, transplant, dump, status
    "batch.archive",          # archive a batch (writes off stock)
    "flags.write",            # set batch flags
    "reconciliation.read",    # run reconciliation, view alerts
}

WILDCARD = "*"


def has_permission(user_permissions: list[str] | set[str], required: str) -> bool:
    """Check whether a permission set satisfies a requirement."""
    return WILDCARD in user_permissions or required in user_permissions
