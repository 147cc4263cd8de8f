"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./flowcore.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Event bus (0 workers = evaluate inline on the publishing thread)
    EVENT_BUS_WORKERS: int = 0
    EVENT_BUS_QUEUE_SIZE: int = 1000

    # Automation
    ACTION_TIMEOUT_SECONDS: float = 10.0
    AUTOMATION_MAX_DEPTH: int = 3

    # Approval side effects (notification sends to the entry owner)
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Due-date sweep window used by the scheduler entry points
    DUE_DATE_HORIZON_DAYS: int = 3


settings = Settings()
