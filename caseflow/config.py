"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CaseflowConfig(BaseSettings):
    """Case workflow engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///caseflow.db"  # or memory://

    # Workflow catalog; empty means the bundled workflows.yaml
    catalog_path: str = ""

    # Transition configuration
    transition_max_attempts: int = 2  # one internal retry on version conflict
    transition_timeout_seconds: Optional[float] = None

    # SLA monitor configuration
    sla_monitor_enabled: bool = True
    sla_sweep_interval_seconds: float = 300.0

    # Notification configuration
    notification_queue_size: int = 1000
    notification_max_retries: int = 3
    notification_webhook_url: str = ""  # Empty = webhook channel disabled
    notification_webhook_timeout: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "CASEFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CaseflowConfig()


def get_config() -> CaseflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CaseflowConfig:
    """Reload configuration from environment"""
    global config
    config = CaseflowConfig()
    return config
