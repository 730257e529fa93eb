"""
Dojo Admin Console - FastAPI Application.

Entry point for the admin console backend: role hierarchy queries and
bulk user operations over the platform API.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dojo_console.backend.api.v2 import bulk as bulk_api, roles as roles_api
from dojo_console.backend.core.api_helper import close_client
from dojo_console.backend.core.audit import AuditRecorder, HttpAuditRecorder, LogAuditRecorder
from dojo_console.backend.core.bulk import BulkLimits
from dojo_console.backend.core.config import WebSettings, get_web_settings
from dojo_console.backend.core.errors import FetchError
from dojo_console.backend.core.logger import setup_logger
from dojo_console.backend.core.manager import BulkOperationManager
from dojo_console.backend.core.rate_limit import configure_limiter, limiter
from dojo_console.backend.core.roles import HttpRoleProvider, RoleHierarchyStore
from dojo_console.backend.core.user_store import HttpUserStore
from dojo_console.backend.schemas.common import HealthResponse

VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def build_services(settings: WebSettings):
    """Wire the role store and bulk manager against the platform API."""
    role_store = RoleHierarchyStore(
        HttpRoleProvider(settings.roles_api_path),
        owner_role_name=settings.owner_role_name,
        refresh_seconds=settings.roles_refresh_seconds,
    )
    if settings.audit_api_path:
        audit: AuditRecorder = HttpAuditRecorder(settings.audit_api_path)
    else:
        audit = LogAuditRecorder()
    manager = BulkOperationManager(
        roles=role_store,
        user_store=HttpUserStore(settings.users_api_path),
        audit=audit,
        limits=BulkLimits.from_settings(settings),
        max_retained=settings.bulk_max_retained_operations,
    )
    return role_store, manager


# ── FastAPI app ───────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_web_settings()
    setup_logger(settings.log_level, settings.log_dir)
    logger.info("Admin console API starting on %s:%s", settings.host, settings.port)

    role_store, manager = build_services(settings)
    app.state.role_store = role_store
    app.state.bulk_manager = manager

    try:
        await role_store.load()
    except FetchError as e:
        # Retried lazily on the first request
        logger.warning("Initial role hierarchy load failed: %s", e.detail)

    yield

    await manager.shutdown()
    await close_client()
    logger.info("Admin console API stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_web_settings()

    app = FastAPI(
        title="Dojo Admin Console API",
        description="Role hierarchy and bulk user operations",
        version=VERSION,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    # Rate limiter
    configure_limiter(settings.rate_limit_enabled)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Prevent insecure "*" with allow_credentials=True
    cors_origins = [o for o in settings.cors_origins if o != "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Actor-Id", "X-Actor-Role"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        return response

    app.include_router(roles_api.router, prefix="/api/v2/roles", tags=["roles"])
    app.include_router(bulk_api.router, prefix="/api/v2/users", tags=["bulk"])

    @app.get("/api/v2/health", tags=["health"], response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        role_store = getattr(request.app.state, "role_store", None)
        manager = getattr(request.app.state, "bulk_manager", None)
        return HealthResponse(
            status="ok" if role_store is not None and role_store.is_loaded else "degraded",
            version=VERSION,
            services={
                "roles_loaded": bool(role_store and role_store.is_loaded),
                "bulk_running": manager.running_count if manager else 0,
                "bulk_retained": len(manager) if manager else 0,
            },
        )

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_web_settings()
    uvicorn.run(
        "dojo_console.backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
