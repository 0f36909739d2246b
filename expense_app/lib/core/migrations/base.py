"""
Base class and registry entry type for database migrations.

Each migration should:
1. Have a unique name, e.g. "003_migrate_receipt_url"
2. Provide a version label and a description
3. Implement upgrade()
4. Be idempotent where possible (check_can_apply() returns False when the
   schema change is already present)
"""

import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional
import logging

from expense_app.lib.utils.hash_utils import compute_migration_checksum

# Given a connection inside an open transaction, mutate schema/data.
# Returning False (or raising) reports failure.
Transform = Callable[[sqlite3.Connection], Optional[bool]]


class Migration(ABC):
    """
    Base class for database migrations.

    Subclasses must implement the name, version and description properties
    and upgrade().
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize migration.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique migration name.

        The numeric prefix documents the intended position, but execution
        order is the registration order.
        """
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """
        Application version that introduced the migration (informational).
        """
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """
        Human-readable description of the migration.
        """
        pass

    @abstractmethod
    def upgrade(self, conn: sqlite3.Connection) -> None:
        """
        Apply the migration.

        Args:
            conn: SQLite connection (in transaction)

        Raises:
            Exception: If migration fails
        """
        pass

    def check_can_apply(self, conn: sqlite3.Connection) -> bool:
        """
        Check if migration needs to change anything.

        Override this to detect databases that already have the schema
        change (e.g. created by an older release before the ledger existed).

        Args:
            conn: SQLite connection (in transaction)

        Returns:
            True if upgrade() should run
        """
        return True

    def apply(self, conn: sqlite3.Connection) -> bool:
        """
        Transform entry point used by the executor.

        Runs upgrade() unless check_can_apply() reports the change as
        already present, in which case the migration is a no-op.
        """
        if not self.check_can_apply(conn):
            self.logger.info(f"Migration {self.name}: schema already up to date, nothing to change")
            return True
        self.upgrade(conn)
        return True

    def to_definition(self) -> "MigrationDefinition":
        return MigrationDefinition.from_migration(self)

    def __repr__(self) -> str:
        return f"<Migration {self.name} ({self.version}): {self.description}>"


@dataclass(frozen=True)
class MigrationDefinition:
    """
    Immutable registry entry.

    The checksum is computed once, when the definition is created, from the
    migration's logic. Use create() or from_migration() rather than the
    constructor so that the checksum is always derived from the transform.
    """

    name: str
    version: str
    description: Optional[str]
    checksum: str
    transform: Transform = field(compare=False, repr=False)

    @classmethod
    def create(
        cls,
        name: str,
        transform: Transform,
        version: str = "1.0.0",
        description: Optional[str] = None,
    ) -> "MigrationDefinition":
        """
        Build a definition from a plain callable.

        Args:
            name: Unique migration name
            transform: Callable receiving the connection inside a transaction
            version: Version label
            description: Human-readable description

        Returns:
            Definition with its checksum computed

        Raises:
            ValueError: If the name is empty
            TypeError: If the transform has no stable fingerprint
        """
        if not name:
            raise ValueError("Migration name must not be empty")
        checksum = compute_migration_checksum(name, version, transform)
        return cls(
            name=name,
            version=version,
            description=description,
            checksum=checksum,
            transform=transform,
        )

    @classmethod
    def from_migration(cls, migration: Migration) -> "MigrationDefinition":
        """Build a definition from a Migration instance."""
        return cls.create(
            name=migration.name,
            transform=migration.apply,
            version=migration.version,
            description=migration.description,
        )

    def current_checksum(self) -> str:
        """Recompute the checksum from the transform as it is now."""
        return compute_migration_checksum(self.name, self.version, self.transform)
