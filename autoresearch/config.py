from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Basic environment settings
    ENVIRONMENT: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS settings: allowed origins are provided as a comma-separated list in the env var.
    ALLOWED_ORIGINS: str = "*"

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOG_FILE_PATH: Optional[str] = "generated/logs/app.log"

    # Provider credentials
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    TAVILY_API_KEY: Optional[str] = None
    EXA_API_KEY: Optional[str] = None

    # Notification channels
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    SENDGRID_API_KEY: Optional[str] = None
    FROM_EMAIL: Optional[str] = None

    # Queue policy
    QUEUE_ATTEMPTS: int = Field(3, ge=1)
    QUEUE_BACKOFF_DELAY: float = Field(1.0, ge=0)
    QUEUE_KEEP_COMPLETED_AGE: int = 24 * 60 * 60
    QUEUE_KEEP_COMPLETED_COUNT: int = 100
    QUEUE_KEEP_FAILED_AGE: int = 7 * 24 * 60 * 60
    QUEUE_KEEP_FAILED_COUNT: int = 50

    # Worker pool
    WORKER_CONCURRENCY: int = Field(2, ge=1)
    RATE_LIMIT_MAX: int = Field(10, ge=1)
    RATE_LIMIT_DURATION: float = Field(60.0, gt=0)

    # Quota
    MAX_JOBS_PER_DAY: int = Field(10, ge=0)

    # Clarification
    CLARIFICATION_TIMEOUT_HOURS: float = 24
    CLARIFICATION_SHORT_TIMEOUT_HOURS: float = 1
    CLARIFICATION_TIMEOUT_POLICY: str = "proceed"
    CLARIFICATION_SWEEP_INTERVAL: float = 60.0

    # Durable snapshots of jobs, conversations and quotas; memory only when unset
    DATA_DIR: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("CLARIFICATION_TIMEOUT_POLICY")
    @classmethod
    def validate_timeout_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("proceed", "fail", "wait"):
            raise ValueError("CLARIFICATION_TIMEOUT_POLICY must be one of: proceed, fail, wait")
        return v

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


# Create a single instance of the settings that can be imported anywhere in the project.
settings = Settings()
