from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.middleware.tenant import TenantMiddleware
from app.middleware.exceptions import register_exception_handlers
from app.routers import batches, health, reconciliation
from app.services.scheduler import lifespan

app = FastAPI(
    title="Nursery Ledger",
    description="Batch lifecycle and quantity ledger for nursery production",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
)

# Tenant context (innermost - processes request data)
app.add_middleware(TenantMiddleware)

# ── Routers ──────────────────────────────────────────────────
# Public (no tenant context needed)
app.include_router(health.router)

# Tenant-scoped (require org_id in JWT)
app.include_router(batches.router, prefix="/api/batches", tags=["batches"])
app.include_router(reconciliation.router, prefix="/api/reconciliation", tags=["reconciliation"])
