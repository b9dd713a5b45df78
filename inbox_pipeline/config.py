"""
Centralized configuration using Pydantic Settings.

All environment variables are loaded and validated here.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL (messages, extracted data, queue jobs)
    db_host: str = "postgres"
    db_port: int = 5432
    db_name: str = "inbox_pipeline"
    db_user: str = "inbox"
    db_password: str = ""

    # IMAP mailbox collaborator
    imap_host: str = "imap.gmail.com"
    imap_folder: str = "INBOX"

    # Classifier service (empty URL = heuristics only)
    classifier_service_url: str = ""
    classifier_timeout: float = 25.0  # Capped at the stage timeouts

    # Change detector
    monitor_interval_seconds: int = 30
    fallback_max_results: int = 15
    fallback_days: int = 1  # Recency window for fallback listing

    # Job queue
    queue_name: str = "email-processing"
    queue_concurrency: int = 2
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 2.0
    queue_poll_interval_seconds: float = 1.0
    queue_stall_seconds: int = 600  # ACTIVE job with no heartbeat this long is reclaimed

    # Priorities (lower value is served first)
    classify_priority: int = 1
    extract_priority: int = 3
    sync_priority: int = 5

    # Stage timeouts
    classify_timeout_seconds: float = 30.0
    extract_timeout_seconds: float = 30.0

    # Categories that must always get an extraction attempt
    always_extract_categories: list[str] = ["CREDIT_CARD"]

    # Recovery sweeper
    recovery_enabled: bool = True
    recovery_interval_seconds: int = 60
    recovery_grace_minutes: int = 5
    recovery_batch_size: int = 10
    recovery_categories: list[str] = ["CREDIT_CARD", "BANKING", "PAYMENT"]

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def database_url(self) -> str:
        """PostgreSQL connection URL."""
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


# Global settings instance
settings = Settings()
