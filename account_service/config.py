"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class AccountServiceConfig(BaseSettings):
    """Account service configuration"""

    # Database configuration
    database_url: str = "sqlite:///accounts.db"  # memory://, sqlite:///path or postgresql://...
    storage_timeout_seconds: float = 5.0  # Upper bound for any single storage call

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    checking_overdraft_limit: str = "0.00"  # How far below zero CHECKING may go
    allow_reactivation: bool = False  # CLOSED is terminal unless enabled
    max_update_retries: int = 5  # Re-reads after a stale-version rejection

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "ACCOUNTS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AccountServiceConfig()


def get_config() -> AccountServiceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AccountServiceConfig:
    """Reload configuration from environment"""
    global config
    config = AccountServiceConfig()
    return config
