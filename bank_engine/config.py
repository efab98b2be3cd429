"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class EngineConfig(BaseSettings):
    """Bank engine configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///bank_engine.db"  # or memory://
    storage_timeout_seconds: float = 5.0  # SQLite busy timeout
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    default_currency: str = "EUR"
    external_transfer_fee: str = "0.50"
    iban_country_code: str = "GR"
    iban_bank_code: str = "1234"
    card_validity_years: int = 3
    
    # Transfer processing
    process_max_retries: int = 3
    process_retry_backoff_seconds: float = 0.05
    
    # Feature flags
    enable_audit_logging: bool = True
    
    model_config = SettingsConfigDict(
        env_prefix="BANK_ENGINE_",
        env_file=".env",
        case_sensitive=False
    )


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
