"""
Configuration settings for BookForge
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field, field_validator


class Settings(BaseSettings):
    """Application settings"""

    # Project Info
    PROJECT_NAME: str = "BookForge"
    VERSION: str = "1.0.0"
    APP_ENV: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # Database
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./bookforge.db")
    DATABASE_ECHO: bool = Field(default=False)
    SQLITE_BUSY_TIMEOUT_MS: int = Field(default=5000)

    # Redis
    REDIS_URL: Optional[str] = Field(default=None)

    # LLM provider (OpenAI-compatible chat completions)
    LLM_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("LLM_API_KEY", "DEEPSEEK_API_KEY"),
    )
    LLM_API_BASE: str = "https://api.deepseek.com/v1"
    LLM_MODEL: str = "deepseek-chat"
    LLM_TIMEOUT: float = Field(default=300.0)
    LLM_MAX_RETRIES: int = Field(default=2)
    CHAT_MAX_TOKENS: int = Field(default=4096)
    CHAPTER_MAX_TOKENS: int = Field(default=6000)
    SUMMARY_MAX_WORDS: int = Field(default=200)

    # Job queue
    JOB_POLL_INTERVAL_SECONDS: float = Field(default=1.0)
    JOB_HEARTBEAT_INTERVAL_SECONDS: float = Field(default=30.0)
    JOB_STALE_AFTER_SECONDS: float = Field(default=300.0)
    JOB_MAX_ATTEMPTS: int = Field(default=3)
    JOB_BACKOFF_BASE_SECONDS: float = Field(default=5.0)
    JOB_BACKOFF_MAX_SECONDS: float = Field(default=300.0)
    JOB_CLAIM_BATCH_SIZE: int = Field(default=20)
    JOB_DRAIN_MAX_JOBS: int = Field(default=50)

    # Provider rate limiting
    RATE_LIMIT_BACKEND: str = Field(default="memory")
    RATE_LIMIT_DEFAULT_PAUSE_SECONDS: float = Field(default=60.0)
    RATE_LIMIT_REDIS_KEY: str = Field(default="bookforge:rate_limit:reset_at")

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Only in-process or redis-shared pause state is supported"""
        value = v.strip().lower()
        if value not in {"memory", "redis"}:
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return value

    # Revision
    REVISION_DEFAULT_TOLERANCE_PERCENT: float = Field(default=5.0)
    REVISION_MAX_CHAPTER_CUT_RATIO: float = Field(default=0.3)
    REVISION_CONDENSE_TEMPERATURE: float = Field(default=0.4)

    # Celery
    CELERY_BROKER_URL: str = Field(
        default="",
        validation_alias=AliasChoices("CELERY_BROKER_URL", "REDIS_URL"),
    )
    CELERY_RESULT_BACKEND: str = Field(
        default="",
        validation_alias=AliasChoices("CELERY_RESULT_BACKEND", "REDIS_URL"),
    )

    # Observability
    LOG_LEVEL: str = Field(default="INFO")
    STRUCTURED_LOGGING_ENABLED: bool = Field(default=False)
    EVENT_BUS_ENABLED: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


# Create settings instance
settings = Settings()  # type: ignore[call-arg]
