import logging

from fastapi import FastAPI, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.core.config import settings
from .routers import users, maintenance
from .middleware.maintenance import maintenance_mode_middleware
from .core.maintenance_guard import MaintenanceGuard
from .core.maintenance_state import maintenance_store
from .core import scheduler

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler.init_scheduler()
    scheduler.start_scheduler()

    maintenance_store.init(timeout=settings.MAINTENANCE_FETCH_TIMEOUT)
    guard = MaintenanceGuard(maintenance_store)
    app.state.maintenance_guard = guard
    await guard.mount()
    yield
    guard.dispose()
    maintenance_store.dispose()
    scheduler.shutdown_scheduler()

app = FastAPI(
    lifespan=lifespan,
    title="Teelite Storefront API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None
)

#rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

#maintenance gate, runs before any storefront route is reached
app.middleware("http")(maintenance_mode_middleware)

#security headers
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    return response

#CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Requested-With",
        "Accept",
        "Origin"
    ],
)

#trusted hosts
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS,
)

api_router = APIRouter(prefix=settings.API_V1_STR)

api_router.include_router(users.router)
api_router.include_router(maintenance.router)

app.include_router(api_router)

@app.get("/", include_in_schema=False)
def read_root():
    return {"message": "OK"}

@app.get("/health", tags=["health"])
def health_check():
    return {
        "status": "healthy",
        "project_name": settings.PROJECT_NAME,
        "version": "1.0.0",
    }

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests"}
    )
