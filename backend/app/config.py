"""Application configuration.

All settings come from environment variables (or ``.env``). The API
process and the Celery worker read the same ``Settings``.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "CRM Automation Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    REDIS_URL: str = "redis://localhost:6379/0"

    # Operator auth; SECRET_KEY must be set outside development
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Pipeline, Messaging and Webhook services
    PIPELINE_SERVICE_URL: str = "http://localhost:8100"
    MESSAGING_SERVICE_URL: str = "http://localhost:8200"
    WEBHOOK_SERVICE_URL: str = "http://localhost:8300"
    SERVICE_API_TOKEN: str = ""
    WEBHOOK_SIGNING_SECRET: str = ""
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0

    # Action retries: attempt n waits RETRY_BASE_DELAY * 2**(n-1), capped
    ACTION_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    ACTION_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY: float = 2.0
    RETRY_MAX_DELAY: float = 60.0

    # Delay scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_SWEEP_INTERVAL_SECONDS: float = 30.0
    SCHEDULER_BATCH_SIZE: int = 100
    SCHEDULER_MAX_CONCURRENCY: int = 10
    RUN_STALE_AFTER_SECONDS: int = 900

    # Trigger events
    MAX_TRIGGER_CHAIN_DEPTH: int = 3
    EMIT_CASCADE_EVENTS: bool = True
    EVENT_BUS_ENABLED: bool = False
    EVENT_CHANNEL: str = "crm.pipeline.events"

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def validate_secrets(self) -> None:
        """Refuse to run in production without a token signing key.

        Raises:
            RuntimeError: If SECRET_KEY is empty in production
        """
        if self.is_production and not self.SECRET_KEY:
            raise RuntimeError("SECRET_KEY must be set in production")


@lru_cache()
def get_settings() -> Settings:
    """Settings, loaded once per process."""
    return Settings()
