"""Tenant middleware: resolves the organisation from the JWT on every request.

Flow:
  1. Extract Bearer token from Authorization header
  2. Decode JWT → get `org_id` claim
  3. Validate the org id
  4. Set ContextVar so downstream code (cache keys, get_current_actor) can read it
  5. After the response, clear the ContextVar

Routes that don't require tenant scope (health, docs) never call
get_current_actor(), so having no tenant context is fine for them.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.auth.jwt import decode_token
from app.tenancy import (
    clear_tenant_context,
    set_current_org_id,
    validate_org_id,
)

# Routes that never require auth; expired tokens are not rejected here
_PUBLIC_PREFIXES = ("/docs", "/openapi.json", "/health")


class TenantMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        auth_header = request.headers.get("authorization", "")
        path = request.url.path

        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            payload = decode_token(token)

            if not payload:
                # Token present but expired/malformed: reject protected
                # routes here with a 401 rather than a later 403
                clear_tenant_context()
                if not any(path.startswith(p) for p in _PUBLIC_PREFIXES):
                    return JSONResponse(
                        status_code=401,
                        content={
                            "error": {
                                "code": "HTTP_401",
                                "message": "Token expired or invalid",
                            }
                        },
                        headers={"WWW-Authenticate": "Bearer"},
                    )
            else:
                org_id = payload.get("org_id")
                if org_id:
                    try:
                        validate_org_id(org_id)
                        set_current_org_id(org_id)
                    except ValueError:
                        clear_tenant_context()
                else:
                    clear_tenant_context()
        else:
            clear_tenant_context()

        try:
            response = await call_next(request)
        finally:
            clear_tenant_context()

        return response
