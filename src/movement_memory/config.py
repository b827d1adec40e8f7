import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    history_limit: int = 500

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get("MM_WORKER_LISTEN_DATABASE_URL") or database_url,
            poll_interval_seconds=float(os.environ.get("MM_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("MM_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("MM_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("MM_HEALTH_PORT", "8081")),
            log_format=os.environ.get("MM_LOG_FORMAT", "json"),
            history_limit=int(os.environ.get("MM_HISTORY_LIMIT", "500")),
        )


@dataclass(frozen=True)
class EngineSettings:
    """Thresholds for recompute and next-time suggestions."""

    stale_after_days: int = 14
    recent_session_window: int = 3
    consistency_window: int = 5
    plateau_run: int = 3
    increment_threshold: float = 100.0
    small_increment: float = 2.5
    large_increment: float = 5.0
    regression_backoff: float = 0.05
    stale_backoff: float = 0.10
    deload_factor: float = 0.8
    default_target_effort: float = 8.0
    classification_history: int = 5

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            stale_after_days=int(os.environ.get("MM_STALE_AFTER_DAYS", "14")),
            plateau_run=int(os.environ.get("MM_PLATEAU_RUN", "3")),
        )

    def increment_for(self, weight: float) -> float:
        """Smallest sensible load jump for a given working weight."""
        if weight >= self.increment_threshold:
            return self.large_increment
        return self.small_increment


DEFAULT_SETTINGS = EngineSettings()
