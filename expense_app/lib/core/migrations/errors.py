"""
Error types for the automatic migration system.

Every failure of a startup run surfaces as a MigrationError subclass that
carries enough structured detail (migration name, phase, backup path) to be
logged and shown to an operator. The error type decides whether the caller
may retry or must stop the application.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional


class MigrationErrorType(str, Enum):
    """Kinds of migration errors."""

    INITIALIZATION = "initialization"
    EXECUTION = "execution"
    CONCURRENCY = "concurrency"
    SYSTEM = "system"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    VALIDATION = "validation"


class ErrorSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


class ErrorAction(str, Enum):
    """Recommended reaction of the startup caller."""

    STOP_APPLICATION = "stop_application"
    RETRY_LATER = "retry_later"
    CONTINUE = "continue"


_SEVERITY_RANK = {
    ErrorSeverity.CRITICAL: 3,
    ErrorSeverity.WARNING: 2,
    ErrorSeverity.INFO: 1,
}


class MigrationError(Exception):
    """
    Base class for all migration errors.

    Attributes:
        error_type: Kind of error
        message: Human-readable message
        migration_name: Migration the error relates to, if any
        details: Additional debugging information
        recoverable: Whether a retry may succeed
        should_stop_startup: Whether the application must not start
        phase: State of the run when the error happened
        backup_path: Pre-migration snapshot, if one was taken
    """

    error_type = MigrationErrorType.SYSTEM
    recoverable = False
    should_stop_startup = True

    def __init__(
        self,
        message: str,
        migration_name: Optional[str] = None,
        details: Optional[str] = None,
        phase: Optional[str] = None,
        backup_path: Optional[Path] = None,
    ):
        super().__init__(message)
        self.message = message
        self.migration_name = migration_name
        self.details = details
        self.phase = phase
        self.backup_path = backup_path

    @property
    def severity(self) -> ErrorSeverity:
        if self.error_type == MigrationErrorType.CONCURRENCY:
            return ErrorSeverity.INFO
        if self.error_type == MigrationErrorType.SYSTEM:
            return ErrorSeverity.WARNING
        return ErrorSeverity.CRITICAL

    def is_recoverable(self) -> bool:
        return self.recoverable

    def detailed_message(self) -> str:
        message = f"[{self.error_type.value}] {self.message}"
        if self.migration_name:
            message += f" (migration: {self.migration_name})"
        if self.details:
            message += f" - details: {self.details}"
        return message

    def log_message(self) -> str:
        message = (
            f"[{self.severity.value}] {self.detailed_message()}"
            f" - recoverable: {self.recoverable}, stop startup: {self.should_stop_startup}"
        )
        if self.phase:
            message += f", phase: {self.phase}"
        if self.backup_path:
            message += f", backup: {self.backup_path}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "migration_name": self.migration_name,
            "details": self.details,
            "phase": self.phase,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "recoverable": self.recoverable,
            "should_stop_startup": self.should_stop_startup,
            "severity": self.severity.value,
        }

    def __str__(self) -> str:
        return self.detailed_message()


class InitializationError(MigrationError):
    """Ledger table could not be created or verified."""

    error_type = MigrationErrorType.INITIALIZATION


class ConcurrencyError(MigrationError):
    """Another migration run is in progress."""

    error_type = MigrationErrorType.CONCURRENCY
    recoverable = True
    should_stop_startup = False


class ExecutionError(MigrationError):
    """A migration's transform failed; its transaction was rolled back."""

    error_type = MigrationErrorType.EXECUTION

    def __init__(self, migration_name: str, cause: Any, **kwargs):
        self.cause = cause
        super().__init__(
            f"Migration '{migration_name}' failed: {cause}",
            migration_name=migration_name,
            **kwargs,
        )


class ChecksumMismatch(MigrationError):
    """A migration's logic no longer matches what was applied."""

    error_type = MigrationErrorType.CHECKSUM_MISMATCH

    def __init__(self, migration_name: str, expected: str, actual: str, **kwargs):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum of migration '{migration_name}' does not match",
            migration_name=migration_name,
            details=f"expected: {expected}, actual: {actual}",
            **kwargs,
        )


class MigrationSystemError(MigrationError):
    """Backup creation or another disk-level failure."""

    error_type = MigrationErrorType.SYSTEM
    recoverable = True
    should_stop_startup = False


class MigrationValidationError(MigrationError):
    """An internal invariant of the migration system was violated."""

    error_type = MigrationErrorType.VALIDATION


class DuplicateMigrationName(MigrationValidationError):
    """Two migrations with the same name were registered."""

    def __init__(self, migration_name: str):
        super().__init__(
            f"Migration '{migration_name}' is already registered",
            migration_name=migration_name,
        )


def determine_action(error: MigrationError) -> ErrorAction:
    """
    Decide how the startup caller should react to an error.

    Args:
        error: Migration error

    Returns:
        RETRY_LATER for recoverable errors, STOP_APPLICATION otherwise
    """
    if error.error_type == MigrationErrorType.CONCURRENCY:
        return ErrorAction.RETRY_LATER
    if error.error_type == MigrationErrorType.SYSTEM and error.recoverable:
        return ErrorAction.RETRY_LATER
    return ErrorAction.STOP_APPLICATION


def log_migration_error(error: MigrationError, logger: Optional[logging.Logger] = None) -> None:
    """Log an error at the level matching its severity."""
    logger = logger or logging.getLogger(__name__)
    if error.severity == ErrorSeverity.CRITICAL:
        logger.error(error.log_message())
    elif error.severity == ErrorSeverity.WARNING:
        logger.warning(error.log_message())
    else:
        logger.info(error.log_message())


def aggregate_errors(errors: Iterable[MigrationError]) -> MigrationError:
    """
    Merge several errors into one, keeping the type of the most severe.

    The result is recoverable only if every error is, and stops startup
    if any error does.
    """
    errors = list(errors)
    if not errors:
        return MigrationSystemError("An error occurred but no details are available")
    if len(errors) == 1:
        return errors[0]

    most_critical = max(errors, key=lambda e: _SEVERITY_RANK[e.severity])

    merged = type(most_critical).__new__(type(most_critical))
    MigrationError.__init__(
        merged,
        f"{len(errors)} errors occurred: {most_critical.message}",
        migration_name=most_critical.migration_name,
        details="; ".join(e.detailed_message() for e in errors),
        phase=most_critical.phase,
        backup_path=most_critical.backup_path,
    )
    for attr in ("cause", "expected", "actual"):
        if hasattr(most_critical, attr):
            setattr(merged, attr, getattr(most_critical, attr))
    merged.recoverable = all(e.recoverable for e in errors)
    merged.should_stop_startup = any(e.should_stop_startup for e in errors)
    return merged
