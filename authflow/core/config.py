"""Application configuration management."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=True,
    )

    # Application
    APP_NAME: str = "Back Office Login"
    APP_ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False

    # Hosted backend (identity provider, profiles table, edge functions)
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    FUNCTIONS_PATH: str = "/functions/v1"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # One-time passcodes
    OTP_CODE_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_RESEND_THRESHOLD_SECONDS: int = 30
    OTP_TICK_SECONDS: float = Field(default=1.0, gt=0)

    # Passwords
    PASSWORD_MIN_LENGTH: int = 6

    # Where a completed login lands
    AUTHENTICATED_ROUTE: str = "/dashboard"

    # Monitoring
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @property
    def is_development(self) -> bool:
        """Check if running in the development environment."""
        return self.APP_ENV == "development"

    @property
    def functions_url(self) -> str:
        """Base URL of the OTP edge functions."""
        return self.SUPABASE_URL.rstrip("/") + self.FUNCTIONS_PATH


settings = Settings()
