"""
Configuration Management Module

Centralized configuration using pydantic-settings. Every field can be
overridden with a STAKING_-prefixed environment variable or a .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class StakingConfig(BaseSettings):
    """Portfolio staking core configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "staking.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules
    auto_provision_portfolios: bool = True
    days_per_month: int = 30  # Flat divisor for daily accrual

    # Accrual scheduling (once per calendar day)
    scheduler_enabled: bool = True
    accrual_hour: int = 0
    accrual_minute: int = 0
    accrual_timezone: str = "UTC"

    # Object storage
    presigned_url_expiry_seconds: int = 3600

    # Pagination
    default_page_size: int = 10
    max_page_size: int = 100

    class Config:
        env_prefix = "STAKING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = StakingConfig()


def get_config() -> StakingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> StakingConfig:
    """Reload configuration from environment"""
    global config
    config = StakingConfig()
    return config
