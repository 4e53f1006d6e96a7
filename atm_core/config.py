"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class AtmConfig(BaseSettings):
    """ATM core engine configuration"""

    # Card and PIN format
    card_number_length: int = 16
    pin_min_length: int = 4
    pin_max_length: int = 6

    # Login lockout policy
    max_failed_attempts: int = 5
    temp_lock_minutes: int = 30

    # Business rules configuration
    max_deposit_amount: str = "1000000.00"
    max_transfer_amount: str = "1000000.00"

    # Well-known administrative account
    admin_card_number: str = "9999888877776666"
    admin_default_pin: str = "8888"
    admin_holder_name: str = "Administrator"
    admin_default_balance: str = "50000.00"
    admin_default_withdraw_limit: str = "10000.00"

    # Storage configuration
    storage_backend: str = "json"  # json or memory
    data_dir: str = "data"
    seed_demo_accounts: bool = False

    # PIN hashing (scrypt cost parameters)
    pin_hash_n: int = 16384
    pin_hash_r: int = 8
    pin_hash_p: int = 1

    # Analytics configuration
    analytics_window_size: int = 10  # Most recent entries used for forecasting
    analytics_averaging_days: int = 30  # Period the window's net flow is spread over

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    configure_logging: bool = True  # Apply the settings above when the system starts

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "ATM_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AtmConfig()


def get_config() -> AtmConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AtmConfig:
    """Reload configuration from environment"""
    global config
    config = AtmConfig()
    return config
