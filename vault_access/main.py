from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from vault_access.core import config
from vault_access.core.database.engine import AsyncSessionLocal, init_db
from vault_access.core.exceptions import (
    AccessDenied,
    Conflict,
    InvalidRule,
    NotFound,
    SyncInProgress,
    UpstreamFailure,
)
from vault_access.core.limiter import limiter
from vault_access.features.users.routes import router as user_router
from vault_access.features.permissions.routes import router as permission_router
from vault_access.features.mirror.routes import (
    cache_router,
    cron_router,
    router as sync_router,
)
from vault_access.features.documentation.routes import router as documentation_router
from vault_access.features.vault.services import VaultServices
from vault_access.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Vault Access",
    description="Scoped access control for mirrored documentation vault data",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter
app.state.vault = None


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.vault_access.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(AccessDenied)
async def access_denied_handler(_request: Request, exc: AccessDenied) -> Response:
    log.info("Access denied: %s %s", exc, exc.scope)
    return JSONResponse({"error": "access_denied", "detail": str(exc)}, status_code=403)


@app.exception_handler(NotFound)
async def not_found_handler(_request: Request, exc: NotFound) -> Response:
    return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)


@app.exception_handler(Conflict)
async def conflict_handler(_request: Request, exc: Conflict) -> Response:
    return JSONResponse({"error": "conflict", "detail": str(exc)}, status_code=409)


@app.exception_handler(SyncInProgress)
async def sync_in_progress_handler(_request: Request, exc: SyncInProgress) -> Response:
    return JSONResponse({"error": "sync_in_progress", "detail": str(exc)}, status_code=409)


@app.exception_handler(InvalidRule)
async def invalid_rule_handler(_request: Request, exc: InvalidRule) -> Response:
    return JSONResponse({"error": "invalid_rule", "detail": str(exc)}, status_code=400)


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(_request: Request, exc: UpstreamFailure) -> Response:
    log.error("Vault request failed: %s", exc)
    return JSONResponse({"error": "upstream_failure", "detail": str(exc)}, status_code=502)


@app.on_event("startup")
async def startup():
    """Initialize database and vault services on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")

    try:
        app.state.vault = VaultServices.build(AsyncSessionLocal)
    except UpstreamFailure as e:
        log.warning("Vault integration disabled: %s", e)


@app.on_event("shutdown")
async def shutdown():
    if app.state.vault is not None:
        await app.state.vault.aclose()
        app.state.vault = None


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Vault Access API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "vault": "configured" if app.state.vault is not None else "disabled",
        "features": {
            "vault_permissions": "Permission groups with org / section / category / asset scoped rules",
            "vault_sync": "Full and incremental mirror of the vault hierarchy",
            "documentation": "Permission-filtered search, browse, and credential reveal",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Vault permission groups (admin) and mirror browsing for the rule editor
app.include_router(permission_router, prefix="/vault-permissions", tags=["vault-permissions"])
app.include_router(cache_router, prefix="/vault-permissions/cache", tags=["vault-permissions"])

# Sync
app.include_router(sync_router, prefix="/vault-sync", tags=["vault-sync"])
app.include_router(cron_router, prefix="/cron", tags=["cron"])

# Permission-filtered consumption
app.include_router(documentation_router, prefix="/documentation", tags=["documentation"])
