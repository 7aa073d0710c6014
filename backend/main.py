"""
Catalog sync & classification backend.

FastAPI application wiring: startup/shutdown lifecycle, error mapping and
the API routers.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_log_level_from_env, get_settings, log_config_status
from exceptions import CatalogError, NotFoundError, PersistenceError, ProviderError, ValidationError
from log_utils import configure_logging, install_safe_logging
from routers import connections, libraries, patterns, rule_builder, rules, scheduler, settings, sync

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    from database import init_db
    from rule_builder import get_rule_builder
    from task_engine import start_engine, stop_engine

    install_safe_logging()
    configure_logging(get_log_level_from_env())
    log_config_status()

    settings = get_settings()
    configure_logging(settings.backend_log_level)

    init_db()
    await start_engine()
    await get_rule_builder().start_sweeper(settings.session_sweep_interval_seconds)
    logger.info("Catalog backend started")
    yield
    # Shutdown: no new ticks or sweeps, in-flight work finishes
    await get_rule_builder().stop_sweeper()
    await stop_engine()
    logger.info("Catalog backend stopped")


app = FastAPI(
    title="Catalog Sync & Classification",
    description="Media catalog mirroring, pattern analysis and library routing rules",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(exc, (ValidationError, NotFoundError)):
        logger.info(f"{exc.__class__.__name__} at {request.url.path}: {exc.message}")
    elif isinstance(exc, ProviderError):
        logger.warning(f"Provider error at {request.url.path} ({exc.provider or 'unknown'}): {exc.message}")
    elif isinstance(exc, PersistenceError):
        logger.error(f"Persistence error at {request.url.path}: {exc.message}")
    else:
        logger.error(f"Unhandled catalog error at {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "catalog-sync"}


app.include_router(connections.router)
app.include_router(libraries.router)
app.include_router(sync.router)
app.include_router(rules.router)
app.include_router(rule_builder.router)
app.include_router(patterns.router)
app.include_router(scheduler.router)
app.include_router(settings.router)
