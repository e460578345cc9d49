"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankCoreConfig(BaseSettings):
    """Banking core configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "bankcore.db"

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3

    # Money configuration
    default_currency: str = "USD"

    # Transfer rules
    min_transfer_amount: str = "1.00"
    reference_max_attempts: int = 5

    # Loan rules
    default_loan_interest_rate: str = "8.5"  # Annual percent
    loan_min_principal: str = "1000"
    loan_max_principal: str = "1000000"
    loan_min_tenure_months: int = 6
    loan_max_tenure_months: int = 360

    # Credit card application rules
    credit_limit_income_ratio: str = "0.30"
    credit_limit_cap: str = "50000"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True
    enable_notifications: bool = True

    class Config:
        env_prefix = "BANKCORE_"
        env_file = ".env"
        case_sensitive = False


# Process-wide configuration read from the environment at import time
config = BankCoreConfig()


def get_config() -> BankCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankCoreConfig:
    """Reload configuration from environment"""
    global config
    config = BankCoreConfig()
    return config
