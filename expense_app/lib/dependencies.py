"""
FastAPI dependency injection functions.

Provides injectable dependencies for the database connection and the
migration service created during application startup.
"""

import sqlite3
from typing import Generator

from fastapi import HTTPException, Request

from .core.migrations import AutoMigrationService
from .sqlite_utils import get_connection


def get_migration_service(request: Request) -> AutoMigrationService:
    """Get the AutoMigrationService configured at startup"""
    service = getattr(request.app.state, "migration_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Migration service not initialized")
    return service


def get_db_connection(request: Request) -> Generator[sqlite3.Connection, None, None]:
    """Short-lived connection to the application database, closed after the request"""
    db_path = getattr(request.app.state, "db_path", None)
    if db_path is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    with get_connection(db_path) as conn:
        yield conn
