from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from crm.core import config
from crm.core.database.engine import init_db
from crm.core.exceptions import CRMError
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.routes import router as permission_router
from crm.features.projects.routes import router as project_router
from crm.features.reporting.routes import router as reporting_router
from crm.features.roles.routes import router as role_router
from crm.features.users.routes import router as user_router
from crm.features.users.dependencies import get_authorization_header
from crm.utils import get_logger


log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the role cache on startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    app.state.role_cache = RoleCache()
    yield
    app.state.role_cache.invalidate()


log.info("Initializing server")
app = FastAPI(
    title="CRM Backend",
    description="Role, user and project permission engine",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None,
    lifespan=lifespan,
)
limiter = Limiter(key_func=get_authorization_header, default_limits=[config.RATE_LIMIT])
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.crm.features."), timing=timing, tags=tags))


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


@app.exception_handler(CRMError)
async def crm_exception_handler(_request: Request, exc: CRMError):
    content = {"message": exc.message}
    if exc.details:
        content["details"] = exc.details
    if exc.status_code >= 500:
        log.error("%s: %s", type(exc).__name__, exc.message)
    else:
        log.info("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


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


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "CRM Backend API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/*", "/roles/*", "/permissions/*", "/projects/*", "/reporting/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Role permissions refined by per-user and per-project allow/deny overrides",
            "roles": "Leveled roles; edits cascade to every user on the role",
            "reporting": "Reporting graph with rank validation and superadmin oversight",
            "projects": "Project membership used by project-scoped permission checks",
            "users": "Users bound to one role each"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])
app.include_router(role_router, prefix="/roles", tags=["roles"])
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
app.include_router(project_router, prefix="/projects", tags=["projects"])
app.include_router(reporting_router, prefix="/reporting", tags=["reporting"])
