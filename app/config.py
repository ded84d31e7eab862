from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/studio"

    # Auth settings for the operational API
    AUTH_JWKS_URL: str = "http://localhost:8000/.well-known/jwks.json"
    AUTH_AUDIENCE: str = "authenticated"

    # Google OAuth settings (shared by Gmail + Calendar)
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    ENCRYPTION_KEY: str | None = None

    # OpenAI settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_TOKENS: int = 2048
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_TIMEOUT_SECONDS: float = 30.0

    # Shared generation budget (one API key for every tenant)
    AI_RATE_LIMIT_PER_MINUTE: int = 10
    AI_RATE_LIMIT_PER_DAY: int = 1000

    # =================================================================
    # AUTO-REPLY SCHEDULER SETTINGS
    # =================================================================
    AUTO_REPLY_ENABLED: bool = True
    AUTO_REPLY_INTERVAL_SECONDS: float = 60.0
    AUTO_REPLY_FETCH_LIMIT: int = 10
    AUTO_REPLY_FETCH_QUERY: str = "in:inbox is:unread"
    AUTO_REPLY_CALL_TIMEOUT_SECONDS: float = 30.0
    AUTO_REPLY_MAX_TRANSIENT_FAILURES: int = 3
    AUTO_REPLY_MAX_CONCURRENT_TENANTS: int = 5
    AUTO_REPLY_APPOINTMENT_MINUTES: int = 60
    AUTO_REPLY_DEFAULT_TIMEZONE: str = "Europe/Rome"
    AUTO_REPLY_DEFAULT_LANGUAGE: str = "it"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 8
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # The scheduler is the only heavy user in dev
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config

    def get_quota_limits(self) -> dict[str, int]:
        """Ceilings for the shared generation quota windows."""
        return {
            "minute": self.AI_RATE_LIMIT_PER_MINUTE,
            "day": self.AI_RATE_LIMIT_PER_DAY,
        }


settings = Settings()
