"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings


class OriginationConfig(BaseSettings):
    """Loan origination core configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory:// or a SQLite file path

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Calculation engine
    money_precision: int = 2
    rate_precision: int = 4
    max_payments: int = 1000
    cat_tolerance: Decimal = Decimal("1e-10")  # Step size on the periodic rate
    cat_max_iterations: int = 100

    # Product defaults (used when a product leaves a rule unset)
    default_min_amount: Decimal = Decimal("5000")
    default_max_amount: Decimal = Decimal("500000")
    default_annual_rate: Decimal = Decimal("45")
    default_min_term_months: int = 3
    default_max_term_months: int = 48
    default_opening_commission_rate: Decimal = Decimal("0")

    # Counter offers
    counter_offer_min_amount: Decimal = Decimal("1000")
    counter_offer_max_term_months: int = 120
    approve_on_counter_offer_acceptance: bool = False

    # Lifecycle
    draft_expiry_days: int = 30
    stale_after_hours: int = 8

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    class Config:
        env_prefix = "ORIGINATION_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = OriginationConfig()


def get_config() -> OriginationConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> OriginationConfig:
    """Reload configuration from environment"""
    global config
    config = OriginationConfig()
    return config
