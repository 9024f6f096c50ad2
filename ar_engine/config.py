"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class EngineConfig(BaseSettings):
    """Collections engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///:memory:"  # memory:// selects InMemoryStorage
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Money
    currency: str = "USD"
    
    # Batch configuration
    batch_page_size: int = 100
    batch_max_workers: int = 4
    account_unit_timeout_seconds: float = 30.0
    run_wait_grace_seconds: float = 5.0  # Slack on top of the per-account budget before a run stops waiting
    error_sample_limit: int = 10
    
    # Aging and priority
    bucket_tolerance_minor_units: int = 1
    priority_high_threshold: str = "2000.00"   # Weighted exposure, major units
    priority_medium_threshold: str = "500.00"
    
    # Payment plans
    plan_max_term_months: int = 24
    plan_grace_days: int = 0
    plan_default_after_misses: int = 3
    
    # Rule actions
    task_default_due_days: int = 3
    
    class Config:
        env_prefix = "AR_ENGINE_"
        env_file = ".env"
        case_sensitive = False


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
