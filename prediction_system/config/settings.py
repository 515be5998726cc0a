"""
Application Settings

Centralized runtime configuration for the prediction service.
Every value is loaded from environment variables (a `.env` file at the
project root is honoured via python-dotenv).
"""
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

load_dotenv(dotenv_path=ENV_FILE)


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on junk."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_list_env(key: str) -> List[str]:
    """Get a comma-separated list from environment variable."""
    return [item.strip() for item in os.getenv(key, "").split(",") if item.strip()]


class Settings:
    """
    Runtime settings.

    Values are read once at import time. Tests override them by patching
    attributes on the `settings` instance.
    """

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    SERVICE_NAME: str = "prediction-system"
    VERSION: str = "2.0.0"

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./predictions.db")
    DB_POOL_TIMEOUT: int = get_int_env("DB_POOL_TIMEOUT", 30)
    DB_ECHO: bool = get_bool_env("DB_ECHO", False)

    # Tokens
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_REFRESH_SECRET_KEY: str = os.getenv("JWT_REFRESH_SECRET_KEY", "refresh-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)
    REFRESH_TOKEN_EXPIRE_DAYS: int = get_int_env("REFRESH_TOKEN_EXPIRE_DAYS", 30)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    ALLOWED_ORIGINS: List[str] = get_list_env("ALLOWED_ORIGINS")

    # Rate limits (slowapi syntax)
    RATE_LIMIT_DEFAULT: str = os.getenv("RATE_LIMIT_DEFAULT", "100/15minutes")
    RATE_LIMIT_PREDICTION: str = os.getenv("RATE_LIMIT_PREDICTION", "10/5minutes")
    RATE_LIMIT_ADMIN: str = os.getenv("RATE_LIMIT_ADMIN", "50/10minutes")
    RATE_LIMIT_LOGIN: str = os.getenv("RATE_LIMIT_LOGIN", "5/15minutes")
    RATE_LIMIT_REGISTER: str = os.getenv("RATE_LIMIT_REGISTER", "3/hour")
    RATE_LIMIT_ENABLED: bool = get_bool_env("RATE_LIMIT_ENABLED", True)

    # Channel defaults
    DEFAULT_MAX_SCORE: int = get_int_env("DEFAULT_MAX_SCORE", 13)

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


settings = Settings()
