"""
Store configuration using Pydantic Settings.
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Store settings."""

    # Application
    APP_NAME: str = "IPBan Database"
    VERSION: str = "1.0.0"

    # Paths
    DATA_DIR: Path = Path(__file__).parent.parent.parent / "data"

    # Database
    DATABASE_FILE_NAME: str = "ipban.sqlite"
    DATABASE_PATH: str | None = None  # ":memory:" for a throwaway store
    ECHO_SQL: bool = False

    # SQLite tuning
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0
    SQLITE_JOURNAL_MODE: str = "WAL"
    SQLITE_AUTO_VACUUM: str = "INCREMENTAL"

    # Reconciliation
    RESET_FAILED_LOGIN_COUNT_ON_UNBAN: bool = True

    # Logs
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    def database_path(self) -> str:
        """Resolve the SQLite file path, honouring DATABASE_PATH overrides."""
        if self.DATABASE_PATH:
            return self.DATABASE_PATH
        return str(self.DATA_DIR / self.DATABASE_FILE_NAME)


settings = Settings()
