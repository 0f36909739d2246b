"""
Read-only migration status endpoints.

Lets operators and the frontend check whether the database schema is up to
date without touching the ledger.
"""

import sqlite3
from typing import List

from fastapi import APIRouter, Depends

from ..lib.core.migrations import (
    AppliedMigrationRecord,
    AutoMigrationService,
    MigrationStatusReport,
)
from ..lib.dependencies import get_db_connection, get_migration_service
from ..lib.logging_utils import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/migrations", tags=["migrations"])


@router.get("/status", response_model=MigrationStatusReport)
def migration_status(
    service: AutoMigrationService = Depends(get_migration_service),
    conn: sqlite3.Connection = Depends(get_db_connection),
):
    """Compare applied migrations with the migrations this release knows about."""
    report = service.check_migration_status(conn)
    logger.debug(
        f"Migration status: {report.total_applied}/{report.total_available} applied, "
        f"{len(report.pending_migrations)} pending"
    )
    return report


@router.get("/history", response_model=List[AppliedMigrationRecord])
def migration_history(
    service: AutoMigrationService = Depends(get_migration_service),
    conn: sqlite3.Connection = Depends(get_db_connection),
):
    """Applied migrations, oldest first."""
    return service.get_migration_history(conn)
