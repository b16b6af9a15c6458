from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from cms_backend import __version__
from cms_backend.core import config
from cms_backend.core.database.engine import AsyncSessionLocal, init_db
from cms_backend.features.permissions.access_control import AccessControlFactory
from cms_backend.features.permissions.cache import PermissionCache
from cms_backend.features.permissions.policies import build_access_registry
from cms_backend.features.permissions.resolver import PermissionResolver
from cms_backend.features.permissions.routes import router as permission_router
from cms_backend.features.users.routes import router as user_router
from cms_backend.features.users.dependencies import get_authorization_header
from cms_backend.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="CMS Backend",
    description="Content management API with role-based access control",
    version=__version__,
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.cms_backend.features."), timing=timing, tags=tags))


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


def build_permission_engine(session_factory=AsyncSessionLocal) -> PermissionCache:
    """
    Construct the resolver, cache and decision bundles once and attach them to app.state.

    Routes reach them through the dependencies in features/permissions/dependencies.py.
    """
    resolver = PermissionResolver(session_factory, inheritance_depth=config.ROLE_INHERITANCE_DEPTH)
    cache = PermissionCache(
        resolver,
        ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS,
        cleanup_interval_seconds=config.PERMISSION_CACHE_CLEANUP_INTERVAL_SECONDS,
    )
    factory = AccessControlFactory(cache)

    app.state.session_factory = session_factory
    app.state.permission_cache = cache
    app.state.access_registry = build_access_registry(factory, cache)
    return cache


@app.on_event("startup")
async def startup():
    """Initialize database and permission engine on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")

    cache = build_permission_engine()
    cache.start()


@app.on_event("shutdown")
async def shutdown():
    """Release the permission cache sweep."""
    cache = getattr(app.state, "permission_cache", None)
    if cache is not None:
        await cache.stop()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "CMS Backend API",
        "version": __version__,
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/*", "/permissions/*"],
        },
        "features": {
            "permissions": "RBAC with role inheritance, direct grants and a superadmin override",
            "users": "Back-office users and their role assignments",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Permission routes (RBAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
