"""
Application configuration loaded from environment variables.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Identity core configuration."""

    model_config = SettingsConfigDict(env_prefix="ORGAUTH_", env_file=".env", extra="ignore")

    # Database (document store backend)
    database_url: str = "sqlite+aiosqlite:///./data/orgauth.db"
    debug: bool = False

    # Security
    secret_key: str = "CHANGE_ME_IN_PRODUCTION"
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = 60 * 24
    bcrypt_rounds: int = 12
    min_password_length: int = 8

    # Invite codes
    invite_code_length: int = 6
    invite_code_ttl_days: int = 30

    # Profile synchronizer
    profile_max_retries: int = 10
    profile_wait_timeout_seconds: float = 10.0
    profile_write_attempts: int = 3

    # Organizations
    default_plan: Literal["free", "monthly", "semiannual", "annual"] = "free"
    subscription_period_days: int = 30

    # Logging
    log_level: str = "info"
    log_format: Literal["json", "text"] = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
