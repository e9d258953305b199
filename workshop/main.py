import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import WorkshopError
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .routes.appointments import router as appointments_router
from .routes.bug_reports import router as bug_reports_router
from .routes.job_orders import router as job_orders_router
from .routes.logs import router as logs_router
from .routes.maintenance import router as maintenance_router
from .routes.users import router as users_router
from .services.api_key_gate import ApiKeyGate, MaintenanceGate

log = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares; the last one added runs first
    app.add_middleware(MaintenanceGate)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.state.api_key_gate = ApiKeyGate(SessionLocal)

    @app.exception_handler(WorkshopError)
    async def _workshop_error(request: Request, exc: WorkshopError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, error_type=exc.error_type, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Routers
    app.include_router(auth_router)
    app.include_router(job_orders_router)
    app.include_router(appointments_router)
    app.include_router(users_router)
    app.include_router(bug_reports_router)
    app.include_router(maintenance_router)
    app.include_router(logs_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/")
    def root():
        return {"name": settings.app_name, "environment": settings.environment}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        log.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("startup_tables_verified")

    return app


app = create_app()
