"""Multi-tenancy: row-level isolation by organisation id.

Key components:
  - _tenant_ctx          ContextVar holding the org id for the current request
  - set / get / clear helpers for the ContextVar
  - validate_org_id()    rejects malformed org ids before they reach a query
"""

import re
from contextvars import ContextVar

from app.middleware.exceptions import TenantContextError

# ── Request-scoped tenant context ───────────────────────────

_tenant_ctx: ContextVar[str | None] = ContextVar("_tenant_ctx", default=None)


def set_current_org_id(org_id: str) -> None:
    _tenant_ctx.set(org_id)


def get_current_org_id() -> str:
    """Return the current org id or raise if unset."""
    org_id = _tenant_ctx.get()
    if org_id is None:
        raise TenantContextError(
            "No tenant context: this endpoint requires an organisation-scoped user"
        )
    return org_id


def clear_tenant_context() -> None:
    _tenant_ctx.set(None)


# ── Validation ──────────────────────────────────────────────

_ORG_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_org_id(org_id: str) -> str:
    """Ensure org ids are short opaque tokens (uuid, slug)."""
    if not _ORG_ID_RE.match(org_id):
        raise ValueError(f"Invalid org id: {org_id!r}")
    return org_id
