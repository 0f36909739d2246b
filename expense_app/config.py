from pydantic_settings import BaseSettings, SettingsConfigDict
from datetime import timedelta, timezone
from pathlib import Path
from functools import lru_cache
import os

class Settings(BaseSettings):
    """Application settings loaded from .env (or custom env file)"""

    # Allow overriding env_file via EXPENSE_APP_ENV_FILE environment variable
    model_config = SettingsConfigDict(  # type: ignore[misc]
        env_file=os.environ.get('EXPENSE_APP_ENV_FILE', '.env'),
        env_file_encoding='utf-8',
        extra='ignore'
    )

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Paths
    DATA_ROOT: str = "data"  # Parent directory containing the database and backups/
    DB_FILENAME: str = "expenses.db"
    BACKUP_DIR: str = ""  # Optional: override default backup location (data_root/backups)

    # Backups
    BACKUP_ENABLED: bool = True
    BACKUP_RETENTION: int = 10  # Number of backups to keep, 0 = keep all

    # Concurrency guard
    LOCK_TIMEOUT_SECONDS: float = 5.0  # Busy timeout while taking the exclusive scope
    LOCK_STALE_SECONDS: int = 600  # In-progress flag older than this is taken over

    # What to do when another process is migrating: "abort" or "retry"
    CONCURRENCY_POLICY: str = "abort"
    CONCURRENCY_MAX_RETRIES: int = 3
    CONCURRENCY_RETRY_DELAY: float = 2.0  # seconds, doubled after each attempt

    # Per-migration wall-clock budget in seconds, 0 = unlimited
    MIGRATION_TIMEOUT_SECONDS: float = 0

    # Ledger timestamps are written in this fixed UTC offset (JST by default)
    TIMEZONE_OFFSET_HOURS: int = 9

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_CATEGORIES: str = ""

    # Valid values: "development", "production", "testing"
    APPLICATION_MODE: str = "development"

    @property
    def data_root(self) -> Path:
        return Path(self.DATA_ROOT)

    @property
    def application_mode(self) -> str:
        """Return application mode (development, production, testing)"""
        return self.APPLICATION_MODE.lower()

    @property
    def db_path(self) -> Path:
        """Database file; development mode uses a dev_ prefixed file"""
        filename = self.DB_FILENAME
        if self.application_mode == "development" and not filename.startswith("dev_"):
            filename = f"dev_{filename}"
        return self.data_root / filename

    @property
    def backup_dir(self) -> Path:
        if not self.BACKUP_DIR:
            return self.data_root / "backups"
        return Path(self.BACKUP_DIR)

    @property
    def backup_enabled(self) -> bool:
        return self.BACKUP_ENABLED

    @property
    def backup_retention(self) -> int:
        return max(self.BACKUP_RETENTION, 0)

    @property
    def lock_timeout(self) -> float:
        return self.LOCK_TIMEOUT_SECONDS

    @property
    def lock_stale_seconds(self) -> int:
        return self.LOCK_STALE_SECONDS

    @property
    def concurrency_policy(self) -> str:
        """
        Policy applied when the startup run hits a ConcurrencyError.

        "abort" stops startup immediately, "retry" waits and retries
        up to CONCURRENCY_MAX_RETRIES times. Unknown values fall back to "abort".
        """
        policy = self.CONCURRENCY_POLICY.strip().lower()
        if policy not in ("abort", "retry"):
            return "abort"
        return policy

    @property
    def concurrency_max_retries(self) -> int:
        return max(self.CONCURRENCY_MAX_RETRIES, 0)

    @property
    def concurrency_retry_delay(self) -> float:
        return max(self.CONCURRENCY_RETRY_DELAY, 0.0)

    @property
    def migration_timeout(self) -> float | None:
        if self.MIGRATION_TIMEOUT_SECONDS <= 0:
            return None
        return self.MIGRATION_TIMEOUT_SECONDS

    @property
    def ledger_timezone(self) -> timezone:
        return timezone(timedelta(hours=self.TIMEZONE_OFFSET_HOURS))

    @property
    def log_level(self) -> str:
        return self.LOG_LEVEL.upper()

    @property
    def log_categories(self) -> list[str]:
        if not self.LOG_CATEGORIES:
            return []
        return [cat.strip() for cat in self.LOG_CATEGORIES.split(',')]

@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
