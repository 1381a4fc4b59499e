"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business constants that used to drift between code paths (installment counts,
application fee, delinquency thresholds) are resolved here once.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FieldbookConfig(BaseSettings):
    """Fieldbook loan collection configuration"""

    # Database configuration
    database_url: str = "sqlite:///fieldbook.db"  # Default SQLite

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24 * 7
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Repayment schedule configuration
    daily_schedule_length: int = 23     # Entries generated for a daily loan (first is disbursement day)
    daily_installment_count: int = 22   # Divisor for the daily amount and classifier term
    weekly_installment_count: int = 5

    # Business rules configuration
    application_fee: str = "2000.00"
    default_interest_rate: str = "0.10"
    min_outstanding_threshold: str = "0.50"
    remittance_tolerance: str = "0.50"
    delinquency_overdue_days: int = 30
    delinquency_recovery_days: int = 60

    # External rate provider
    rate_provider_url: str = ""  # Empty = use stored/admin-set rate
    rate_provider_timeout: float = 2.0

    # Delinquency aggregation job
    delinquency_job_enabled: bool = False
    delinquency_job_time: str = "02:20"  # HH:MM, UTC
    delinquency_job_include_inactive: bool = False

    class Config:
        env_prefix = "FIELDBOOK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FieldbookConfig()


def get_config() -> FieldbookConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FieldbookConfig:
    """Reload configuration from environment"""
    global config
    config = FieldbookConfig()
    return config
