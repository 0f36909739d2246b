"""
Migration registry.

The canonical, ordered catalogue of migrations the running application
knows about. Registration order is execution order.
"""

from typing import Iterable, Iterator, List, Optional, Tuple
import logging

from .base import Migration, MigrationDefinition
from .errors import DuplicateMigrationName


class MigrationRegistry:
    """
    Ordered collection of MigrationDefinition objects.

    Built explicitly at process start and passed into the service; there is
    no module-level registry.
    """

    def __init__(
        self,
        definitions: Optional[Iterable[MigrationDefinition]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self._definitions: List[MigrationDefinition] = []
        self._by_name: dict[str, MigrationDefinition] = {}
        for definition in definitions or ():
            self.register(definition)

    def register(self, definition: MigrationDefinition) -> None:
        """
        Append a definition.

        Raises:
            DuplicateMigrationName: If the name is already registered; the
                existing entry is kept
        """
        if definition.name in self._by_name:
            raise DuplicateMigrationName(definition.name)
        self._definitions.append(definition)
        self._by_name[definition.name] = definition
        self.logger.debug(f"Registered migration {definition.name} ({definition.version})")

    def register_migration(self, migration: Migration) -> MigrationDefinition:
        """Register a Migration instance and return its definition."""
        definition = MigrationDefinition.from_migration(migration)
        self.register(definition)
        return definition

    def register_migrations(self, migrations: Iterable[Migration]) -> None:
        for migration in migrations:
            self.register_migration(migration)

    def available(self) -> Tuple[MigrationDefinition, ...]:
        """All migrations in registration order. Never re-sorted."""
        return tuple(self._definitions)

    def find(self, name: str) -> Optional[MigrationDefinition]:
        return self._by_name.get(name)

    def names(self) -> List[str]:
        return [d.name for d in self._definitions]

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[MigrationDefinition]:
        return iter(tuple(self._definitions))

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"<MigrationRegistry {self.names()}>"
