"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WaypointConfig(BaseSettings):
    """Waypoint approval engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///waypoint.db"  # or memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Action rules
    reject_comment_min_length: int = 10
    cancel_comment_min_length: int = 5
    comment_max_length: int = 1000

    # Workflow rules
    default_sla_hours: int = 24
    max_steps: int = 10

    # SLA monitoring
    sla_warning_hours: int = 4

    # Feature flags
    enable_audit_chain: bool = True

    class Config:
        env_prefix = "WAYPOINT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WaypointConfig()


def get_config() -> WaypointConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WaypointConfig:
    """Reload configuration from environment"""
    global config
    config = WaypointConfig()
    return config
