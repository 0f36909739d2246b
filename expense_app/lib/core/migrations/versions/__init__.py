"""
Database migration versions.

Each migration should be a separate file in this directory. The order of
ALL_MIGRATIONS is the execution order.
"""

from typing import Optional
import logging

from ..registry import MigrationRegistry
from .m001_create_basic_schema import Migration001CreateBasicSchema
from .m002_add_user_authentication import Migration002AddUserAuthentication
from .m003_migrate_receipt_url import Migration003MigrateReceiptUrl
from .m004_migrate_user_id_to_nanoid import Migration004MigrateUserIdToNanoid

# List all migrations in order
ALL_MIGRATIONS = [
    Migration001CreateBasicSchema,
    Migration002AddUserAuthentication,
    Migration003MigrateReceiptUrl,
    Migration004MigrateUserIdToNanoid,
]


def build_default_registry(logger: Optional[logging.Logger] = None) -> MigrationRegistry:
    """Build the registry of all application migrations."""
    registry = MigrationRegistry(logger=logger)
    registry.register_migrations(migration_class(logger) for migration_class in ALL_MIGRATIONS)
    return registry


__all__ = ["ALL_MIGRATIONS", "build_default_registry"]
