"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrolendConfig(BaseSettings):
    """Microlend loan management configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///microlend.db"  # Default SQLite
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    # Business rules configuration
    min_principal_amount: str = "1000"
    min_payment_amount: str = "1"
    monthly_max_tenure: int = 6
    weekly_max_tenure: int = 24
    daily_max_tenure: int = 20
    
    # Financial figures quoted by the front end are ignored unless enabled
    accept_quoted_financials: bool = False
    
    # Concurrency
    max_concurrency_retries: int = 3
    
    # Feature flags
    auto_approve_repayments: bool = True
    
    class Config:
        env_prefix = "MICROLEND_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def sqlite_path(self) -> str:
        """Filesystem path of the SQLite database"""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[len("sqlite:///"):] or ":memory:"
        return self.database_url


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
