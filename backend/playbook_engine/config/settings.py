"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB (persistent store adapter)
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "playbook_engine_dev"

    # Bearer tokens (issued elsewhere, validated here)
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Idempotency
    idempotency_ttl_hours: int = 24
    idempotency_wait_seconds: float = 10.0  # How long a racing duplicate waits for the winner
    idempotency_poll_interval_ms: int = 50

    # Scheduler (wait wake-ups and step timeouts)
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 15

    # Run driving - a lease not released within this window can be taken over
    run_driver_lease_seconds: int = 300

    # Run detail
    run_step_limit_default: int = 100

    # Outbound calls made by call_api actions
    http_timeout_seconds: float = 30.0

    # Notifications - empty webhook URL means log-only delivery
    notification_webhook_url: str = ""

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def idempotency_ttl_seconds(self) -> int:
        """Idempotency record lifetime in seconds"""
        return self.idempotency_ttl_hours * 3600

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
