"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class LedgerConfig(BaseSettings):
    """Deposit ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///deposit_ledger.db"  # memory://, sqlite:///path, postgresql://...

    # Money handling
    amount_precision: int = 2
    negative_initial_balance: Literal["coerce", "reject"] = "coerce"

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.05  # Doubled after every failed attempt

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
