"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class MicrolendConfig(BaseSettings):
    """Microlend back-office configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MICROLEND_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "microlend.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency_code: str = "NGN"
    min_principal_amount: str = "1000.00"
    max_interest_rate: str = "100"  # Percent
    min_payment_amount: str = "1.00"
    auto_verify_payments: bool = True

    # Concurrency configuration
    lock_timeout_seconds: float = 10.0

    # Reference number prefixes
    loan_number_prefix: str = "BM"
    receipt_prefix: str = "PAY"
    capital_prefix: str = "CAP"
    expense_prefix: str = "EXP"
    disbursement_prefix: str = "DIS"


# Global configuration instance
config = MicrolendConfig()


def get_config() -> MicrolendConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrolendConfig:
    """Reload configuration from environment"""
    global config
    config = MicrolendConfig()
    return config
