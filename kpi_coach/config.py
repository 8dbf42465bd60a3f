"""
Configuration management for the KPI Coach service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "KPI Coach - Suggestion & Action Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_file_enabled: bool = True
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./kpi_coach.db"

    # Business calendar: day/month windows are computed in this timezone
    business_timezone: str = "Asia/Ho_Chi_Minh"

    # External rule-runner ingestion
    ingest_service_token: str = ""
    trusted_ingest_source: str = "n8n"

    # Suggestions
    feedback_detail_limit: int = 5  # Recent feedback rows returned per suggestion
    generate_on_list: bool = True   # Run ensure_generated before listing

    # Authentication
    session_cookie_name: str = "session_token"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
