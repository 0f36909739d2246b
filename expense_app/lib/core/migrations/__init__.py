"""
Automatic database migration system.

Applies pending schema migrations once at application startup:
- Append-only ledger of applied migrations with logic checksums
- Verified database backup before each migration
- One transaction per migration, rolled back on failure
- Cross-process guard so only one run migrates at a time

Usage:
    from expense_app.lib.core.migrations import AutoMigrationService
    from expense_app.lib.core.migrations.versions import build_default_registry

    service = AutoMigrationService(build_default_registry(logger), logger=logger)
    result = service.run_startup_migrations(conn)
"""

from .backup import BackupManager
from .base import Migration, MigrationDefinition
from .errors import (
    ChecksumMismatch,
    ConcurrencyError,
    DuplicateMigrationName,
    ErrorAction,
    ErrorSeverity,
    ExecutionError,
    InitializationError,
    MigrationError,
    MigrationErrorType,
    MigrationSystemError,
    MigrationValidationError,
    aggregate_errors,
    determine_action,
    log_migration_error,
)
from .executor import MigrationExecutor
from .guard import MigrationGuard
from .ledger import MigrationLedger
from .models import (
    AppliedMigrationRecord,
    AutoMigrationResult,
    MigrationExecutionResult,
    MigrationState,
    MigrationStatusReport,
)
from .registry import MigrationRegistry
from .service import AutoMigrationService

__all__ = [
    "AppliedMigrationRecord",
    "AutoMigrationResult",
    "AutoMigrationService",
    "BackupManager",
    "ChecksumMismatch",
    "ConcurrencyError",
    "DuplicateMigrationName",
    "ErrorAction",
    "ErrorSeverity",
    "ExecutionError",
    "InitializationError",
    "Migration",
    "MigrationDefinition",
    "MigrationError",
    "MigrationErrorType",
    "MigrationExecutionResult",
    "MigrationExecutor",
    "MigrationGuard",
    "MigrationLedger",
    "MigrationRegistry",
    "MigrationState",
    "MigrationStatusReport",
    "MigrationSystemError",
    "MigrationValidationError",
    "aggregate_errors",
    "determine_action",
    "log_migration_error",
]
