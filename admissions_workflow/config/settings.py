"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Workflow core settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "admissions_workflow_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    # Automatic transition scanner
    scanner_interval_seconds: int = 60
    scanner_batch_size: int = 200  # Page size when reading scan candidates
    scanner_max_workers: int = 4
    auto_transition_max_chain: int = 5  # Automatic hops per application per pass

    # Per-application transition locking
    transition_lock_timeout_seconds: float = 5.0  # How long a caller waits for the lock
    transition_lock_lease_seconds: int = 30  # Lease on the lock document
    lock_poll_interval_seconds: float = 0.05
    stale_lock_cleanup_minutes: int = 10

    # Stage names treated as intentional end points by the dead-end check
    terminal_stage_names: str = "decision,accepted,rejected,waitlisted,withdrawn,enrolled,enrollment,deferred,closed"

    # Environment
    environment: str = "development"

    @property
    def terminal_stage_names_list(self) -> List[str]:
        """Parse terminal stage names to a lowercase list"""
        return [name.strip().lower() for name in self.terminal_stage_names.split(",") if name.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
