"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class KodBankConfig(BaseSettings):
    """KodBank ledger core configuration"""

    # Database configuration
    database_url: str = "sqlite:///kodbank.db"  # "memory://" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Account opening
    account_number_prefix: str = "KB"
    account_number_max_attempts: int = 5
    registration_seed_balance: str = "1000.00"
    default_account_type: str = "Savings"
    default_account_name: str = "Primary Savings"

    # Transfer engine
    lock_timeout_seconds: float = 5.0
    compensation_max_attempts: int = 5
    compensation_backoff_seconds: float = 0.05

    class Config:
        env_prefix = "KODBANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = KodBankConfig()


def get_config() -> KodBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> KodBankConfig:
    """Reload configuration from environment"""
    global config
    config = KodBankConfig()
    return config
