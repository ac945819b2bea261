"""
ActGuard Core Configuration
Environment-driven settings for the authentication and secrets-protection core.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    ActGuard Configuration Settings
    """

    # Application
    APP_NAME: str = "ActGuard"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    # Encryption (32 bytes, hex encoded)
    ENCRYPTION_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("logs")
    LOG_TO_FILE: bool = True

    # Used to decide what counts as "unusual hours"
    LOCAL_TIMEZONE: str = "UTC"

    # MFA
    MFA_ISSUER: str = "ActGuard"
    MFA_BACKUP_CODE_COUNT: int = 10

    # Security policy seeds
    DEFAULT_MFA_REQUIRED: bool = False
    DEFAULT_PASSWORD_MIN_LENGTH: int = 8
    DEFAULT_MAX_LOGIN_ATTEMPTS: int = 5
    DEFAULT_LOCKOUT_DURATION_MINUTES: int = 15
    DEFAULT_MAX_CONCURRENT_SESSIONS: int = 3
    DEFAULT_CAPTCHA_AFTER_ATTEMPTS: int = 3
    DEFAULT_PASSWORD_EXPIRATION_DAYS: int = 90
    SESSION_TIMEOUT_MINUTES: int = 480  # 8 hours
    AUDIT_LOG_RETENTION_DAYS: int = 90

    # Request gate
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_MAX_REQUESTS: int = 100
    SESSION_WARN_RISK_SCORE: int = 70
    SESSION_REAUTH_RISK_SCORE: int = 90

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> str:
        value = str(v).strip().lower()
        if value not in {"development", "production", "test"}:
            raise ValueError(f"Unknown environment: {v}")
        return value

    @field_validator("ENCRYPTION_KEY", mode="before")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.fullmatch(r"[0-9a-fA-F]{64}", v):
            raise ValueError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        return v.lower()

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str) and v:
            return v
        # Default to SQLite for development
        return "sqlite:///./actguard.db"

    @field_validator("SESSION_TIMEOUT_MINUTES")
    @classmethod
    def check_session_timeout(cls, v: int) -> int:
        if not 5 <= v <= 1440:
            raise ValueError("SESSION_TIMEOUT_MINUTES must be between 5 and 1440")
        return v

    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def default_policy_values(self) -> Dict[str, Any]:
        """Seed values for the security policy singleton"""
        return {
            "mfa_required": self.DEFAULT_MFA_REQUIRED,
            "password_min_length": self.DEFAULT_PASSWORD_MIN_LENGTH,
            "password_max_length": 128,
            "password_require_uppercase": True,
            "password_require_lowercase": True,
            "password_require_numbers": True,
            "password_require_special_chars": True,
            "password_expiration_days": self.DEFAULT_PASSWORD_EXPIRATION_DAYS,
            "password_history_count": 5,
            "max_login_attempts": self.DEFAULT_MAX_LOGIN_ATTEMPTS,
            "lockout_duration_minutes": self.DEFAULT_LOCKOUT_DURATION_MINUTES,
            "session_timeout_minutes": self.SESSION_TIMEOUT_MINUTES,
            "max_concurrent_sessions": self.DEFAULT_MAX_CONCURRENT_SESSIONS,
            "enable_captcha": True,
            "captcha_after_attempts": self.DEFAULT_CAPTCHA_AFTER_ATTEMPTS,
            "enable_audit_logging": True,
            "audit_log_retention_days": self.AUDIT_LOG_RETENTION_DAYS,
            "encryption_enabled": True,
            "encryption_algorithm": "AES-256-GCM",
            "enable_security_alerts": True,
        }

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_prefix="ACTGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
