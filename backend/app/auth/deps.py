"""FastAPI dependencies for authentication and authorization.

Dependencies:
  get_current_actor       → decode JWT, return Actor(user_id, org_id, permissions)
  require_permission(...) → restrict to actors holding the listed permissions
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.auth.jwt import decode_token
from app.auth.permissions import has_permission
from app.tenancy import get_current_org_id, validate_org_id

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved from the token."""
    user_id: str
    org_id: str
    permissions: tuple[str, ...] = ()


# ── Core actor dependency ───────────────────────────────────

async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Decode the JWT and return the acting user and organisation.

    The org id must agree with the tenant context the middleware set for
    this request.
    """
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    org_id: str | None = payload.get("org_id")
    if not user_id or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organisation context on token",
        )
    try:
        validate_org_id(org_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid organisation id on token",
        )
    if get_current_org_id() != org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context mismatch",
        )

    return Actor(
        user_id=user_id,
        org_id=org_id,
        permissions=tuple(payload.get("permissions", [])),
    )


# ── Permission-based access control ─────────────────────────

def require_permission(*perms: str):
    """Dependency factory: restrict to actors who hold ALL listed permissions.

    Usage:
        @router.post("/{batch_id}/dump")
        async def dump(actor: Actor = Depends(require_permission("batch.write"))):
            ...
    """
    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        missing = [p for p in perms if not has_permission(actor.permissions, p)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return actor

    return _check
