"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import admin, health, search
from api.middleware import RequestContextMiddleware
from api.search import SuggestionCache
from core.config import settings
from core.database import async_session_maker, create_tables
from core.exceptions import AdminAuthError, InvalidTransitionError, MigrationException
from core.logging import setup_logging
from ingestion.controller import ControllerConfig, LocalBatchCaller, MigrationController
from ingestion.scheduler import MigrationScheduler
from ingestion.sources.factory import build_cached_sheet_source, build_sheet_source
from models.base import MigrationStatus
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Escuelas Search Backend API",
    description="Establishment search and spreadsheet migration service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.state.sheet_source = None
app.state.cached_sheet_source = None
app.state.controller = None
app.state.scheduler = None
app.state.suggestion_cache = SuggestionCache(settings.AUTOCOMPLETE_CACHE_SIZE)

# Include routers
app.include_router(health.router)
app.include_router(search.router)
app.include_router(admin.router)


# ============================================================================
# Exception handlers
# ============================================================================

@app.exception_handler(AdminAuthError)
async def admin_auth_error_handler(request: Request, exc: AdminAuthError):
    logger.warning(f"[{getattr(request.state, 'request_id', '-')}] Unauthorized: {exc.message}")
    return JSONResponse(status_code=401, content={"success": False, "error": exc.message})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": exc.message, "context": exc.context}
    )


@app.exception_handler(MigrationException)
async def migration_error_handler(request: Request, exc: MigrationException):
    logger.error(
        f"[{getattr(request.state, 'request_id', '-')}] {exc.__class__.__name__}: {exc.message}",
        extra={"error_context": exc.to_dict()}
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": exc.message,
            "error_type": exc.__class__.__name__,
            "timestamp": datetime.utcnow().isoformat(),
        }
    )


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Escuelas Search Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    await create_tables()

    try:
        source = build_sheet_source(settings)
    except ValueError as e:
        logger.warning(f"Migration disabled: {e}")
        return

    app.state.sheet_source = source
    app.state.cached_sheet_source = build_cached_sheet_source(settings, source)

    controller = MigrationController(
        LocalBatchCaller(async_session_maker, source, settings),
        ControllerConfig.from_settings(settings)
    )
    app.state.controller = controller
    await controller.recover(resume=False)

    scheduler = MigrationScheduler(controller, settings.SYNC_INTERVAL_MINUTES)
    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Escuelas Search Backend API")
    if app.state.scheduler is not None:
        app.state.scheduler.stop()

    controller = app.state.controller
    if controller is not None and controller.status == MigrationStatus.RUNNING:
        # progress is already checkpointed; recover() picks it up on restart
        await controller.pause()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Escuelas Search Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "search": "/search",
            "autocomplete": "/autocomplete",
            "school": "/schools/{cue}",
            "schools_by_predio": "/schools-by-predio",
            "admin": "/admin",
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT, reload=False)
