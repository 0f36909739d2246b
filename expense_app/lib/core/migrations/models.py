"""
Pydantic models for the migration ledger, execution results and status reports.

These models are what the service returns to the startup caller, the
status endpoint and the operator CLI.
"""

import sqlite3
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class AppliedMigrationRecord(BaseModel):
    """One row of the migrations ledger."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    version: str
    description: Optional[str] = None
    checksum: str
    applied_at: str  # ISO-8601 in the configured fixed timezone
    execution_time_ms: Optional[int] = None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row | tuple) -> "AppliedMigrationRecord":
        """Build a record from a ledger row selected in LEDGER_COLUMNS order."""
        return cls(
            id=row[0],
            name=row[1],
            version=row[2],
            description=row[3],
            checksum=row[4],
            applied_at=row[5],
            execution_time_ms=row[6],
            created_at=str(row[7]),
        )


class MigrationExecutionResult(BaseModel):
    """Outcome of executing a single migration."""

    name: str
    success: bool
    message: str
    execution_time_ms: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    backup_path: Optional[Path] = None


class AutoMigrationResult(BaseModel):
    """Summary of a completed startup run."""

    success: bool = True
    applied_migrations: list[str] = Field(default_factory=list)
    backup_path: Optional[Path] = None  # Last backup taken during the run
    total_execution_time_ms: int = 0
    executions: list[MigrationExecutionResult] = Field(default_factory=list)
    skipped: bool = False  # True when nothing was pending
    message: str = ""


class MigrationStatusReport(BaseModel):
    """Read-only view of the ledger compared to the registry."""

    total_available: int
    total_applied: int
    pending_migrations: list[str] = Field(default_factory=list)
    applied_migrations: list[AppliedMigrationRecord] = Field(default_factory=list)
    last_migration_date: Optional[str] = None
    integrity_ok: bool = True
    checksum_mismatches: list[str] = Field(default_factory=list)
    unknown_applied: list[str] = Field(default_factory=list)
    migration_in_progress: bool = False

    @computed_field
    @property
    def up_to_date(self) -> bool:
        return not self.pending_migrations


class MigrationState(str, Enum):
    """States of a startup migration run."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    CHECKING_PENDING = "checking_pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[MigrationState, set[MigrationState]] = {
    MigrationState.IDLE: {MigrationState.INITIALIZING, MigrationState.FAILED},
    MigrationState.INITIALIZING: {MigrationState.CHECKING_PENDING, MigrationState.FAILED},
    MigrationState.CHECKING_PENDING: {
        MigrationState.EXECUTING,
        MigrationState.COMPLETED,
        MigrationState.FAILED,
    },
    # EXECUTING -> EXECUTING advances to the next pending migration
    MigrationState.EXECUTING: {
        MigrationState.EXECUTING,
        MigrationState.COMPLETED,
        MigrationState.FAILED,
    },
    MigrationState.COMPLETED: set(),
    MigrationState.FAILED: set(),
}


class MigrationRun:
    """
    State tracker for one call of run_startup_migrations().

    COMPLETED and FAILED are terminal; any other transition not listed in
    ALLOWED_TRANSITIONS raises RuntimeError.
    """

    def __init__(self):
        self.state = MigrationState.IDLE
        self.current_index = 0
        self.total_pending = 0
        self.history: list[MigrationState] = [MigrationState.IDLE]

    @property
    def is_terminal(self) -> bool:
        return self.state in (MigrationState.COMPLETED, MigrationState.FAILED)

    @property
    def phase(self) -> str:
        if self.state == MigrationState.EXECUTING:
            return f"executing({self.current_index}/{self.total_pending})"
        return self.state.value

    def transition(self, new_state: MigrationState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid migration state transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def fail(self) -> None:
        if not self.is_terminal:
            self.transition(MigrationState.FAILED)
