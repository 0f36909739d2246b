"""
Core infrastructure module for the expense tracker.

Provides the automatic database migration system and its startup entry point.

Components:
- Migration ledger, registry, executor and backup manager
- AutoMigrationService orchestrating a startup run
- run_migrations_on_startup for the application lifespan and the CLI
"""

from expense_app.lib.core.migration_runner import run_migrations_on_startup

__all__ = [
    "run_migrations_on_startup",
]
