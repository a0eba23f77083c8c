import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    activity_first_retry_ms: int = 5000
    activity_backoff_coefficient: float = 1.5
    activity_max_attempts: int = 10
    validation_token_ttl_hours: int = 720
    validation_url: str = "http://localhost:3000/email-validation"
    change_feed_grace_seconds: float = 30.0
    listen_database_url: str = ""

    def __post_init__(self) -> None:
        if not self.listen_database_url:
            object.__setattr__(self, "listen_database_url", self.database_url)

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            poll_interval_seconds=float(os.environ.get("PROFILE_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("PROFILE_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("PROFILE_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("PROFILE_HEALTH_PORT", "8081")),
            log_format=os.environ.get("PROFILE_LOG_FORMAT", "json"),
            activity_first_retry_ms=int(
                os.environ.get("PROFILE_ACTIVITY_FIRST_RETRY_MS", "5000")
            ),
            activity_backoff_coefficient=float(
                os.environ.get("PROFILE_ACTIVITY_BACKOFF", "1.5")
            ),
            activity_max_attempts=int(os.environ.get("PROFILE_ACTIVITY_MAX_ATTEMPTS", "10")),
            validation_token_ttl_hours=int(
                os.environ.get("PROFILE_VALIDATION_TOKEN_TTL_HOURS", "720")
            ),
            validation_url=os.environ.get(
                "PROFILE_VALIDATION_URL", "http://localhost:3000/email-validation"
            ),
            change_feed_grace_seconds=float(
                os.environ.get("PROFILE_CHANGE_FEED_GRACE_SECONDS", "30")
            ),
            listen_database_url=os.environ.get("PROFILE_LISTEN_DATABASE_URL", ""),
        )
