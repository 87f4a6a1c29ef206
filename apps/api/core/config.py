"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (e.g. sqlite for local runs); otherwise built from POSTGRES_*
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="korsana")
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration (coach quota counters)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication - tokens are issued by the auth service, we only verify them
    SECRET_KEY: str = Field(
        default="dev-secret-key-change-me-in-production-0123456789",
        description="JWT signing key shared with the auth service (32+ chars)."
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8080)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # AI providers (Gemini preferred for its free tier; Claude is the alternate)
    GEMINI_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-2.5-flash")
    CLAUDE_API_KEY: Optional[str] = Field(default=None)
    CLAUDE_MODEL: str = Field(default="claude-sonnet-4-5-20250929")
    COACH_MAX_OUTPUT_TOKENS: int = Field(default=1024)
    # Per backend call
    COACH_PROVIDER_TIMEOUT_S: float = Field(default=60.0)
    # Caller deadline for a whole generation round-trip
    COACH_REQUEST_DEADLINE_S: float = Field(default=90.0)
    COACH_HISTORY_TURNS: int = Field(default=10)

    # Coach quotas (Gemini free tier is 1,500/day; keep a buffer)
    COACH_QUOTA_ENABLED: bool = Field(default=True)
    COACH_GLOBAL_DAILY_LIMIT: int = Field(default=1400)
    COACH_USER_HOURLY_LIMIT: int = Field(default=10)
    COACH_USER_DAILY_LIMIT: int = Field(default=50)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
