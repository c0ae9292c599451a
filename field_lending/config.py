"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FieldLendingConfig(BaseSettings):
    """Field lending core configuration"""
    
    # Remote store configuration (empty URL = in-process storage backend)
    remote_url: str = ""
    remote_timeout: float = 10.0
    remote_api_key: str = ""
    
    # Local storage configuration
    storage_path: str = "field_lending.db"  # Use ":memory:" for throwaway runs
    queue_storage_key: str = "field-lending-offline-queue"
    queue_retention_days: int = 7
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    amount_tolerance: str = "0.01"
    default_missed_penalty: str = "0.00"
    
    # Connectivity
    start_online: bool = True
    sync_on_reconnect: bool = True
    
    class Config:
        env_prefix = "FIELD_LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FieldLendingConfig()


def get_config() -> FieldLendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FieldLendingConfig:
    """Reload configuration from environment"""
    global config
    config = FieldLendingConfig()
    return config
