"""
FastAPI main application with versioned API endpoints.

Pending database migrations are applied during startup; the application
does not start serving requests if they fail.
"""

from fastapi import FastAPI, APIRouter
from contextlib import asynccontextmanager

from .config import get_settings
from .lib.logging_utils import setup_logging, get_logger


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle"""
    settings = get_settings()

    # Setup logging
    setup_logging(settings.log_level, settings.log_categories)
    logger.info("Starting expense tracker API")
    logger.info(f"Application mode: {settings.application_mode}")
    logger.info(f"Database: {settings.db_path}")

    settings.data_root.mkdir(parents=True, exist_ok=True)

    from .lib.sqlite_utils import open_connection
    from .lib.core.migration_runner import run_migrations_on_startup
    from .lib.core.migrations import AutoMigrationService
    from .lib.core.migrations.versions import build_default_registry

    registry = build_default_registry(get_logger("expense_app.lib.core.migrations"))

    conn = open_connection(settings.db_path)
    try:
        run_migrations_on_startup(conn, registry, settings, get_logger("expense_app.migrations"))
    except Exception as e:
        logger.error(f"Startup aborted, database was not migrated: {e}")
        raise
    finally:
        conn.close()

    app.state.db_path = settings.db_path
    app.state.migration_service = AutoMigrationService.from_settings(registry, settings, logger)

    logger.info("=" * 80)
    logger.info(f"FastAPI server ready at http://{settings.HOST}:{settings.PORT}")
    logger.info("=" * 80)

    yield

    # Shutdown
    logger.info("Shutting down expense tracker API")


# Create FastAPI application
app = FastAPI(
    title="Expense Tracker API",
    description="API for the expense tracker backend",
    version="1.0.0",
    lifespan=lifespan
)

from .routers import migrations

# Versioned API router (v1)
api_v1 = APIRouter(prefix="/api/v1", tags=["v1"])
api_v1.include_router(migrations.router)


# Health check endpoint (unversioned)
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}

# Mount versioned router
app.include_router(api_v1)
