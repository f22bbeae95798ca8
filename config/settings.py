"""
Configuration management for the timetable scheduling service.
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "School Timetable Scheduling API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    reload: bool = False

    # Engine defaults, used when a request omits its algorithm config
    default_max_iterations: int = 2000
    default_time_limit_seconds: float = 30.0
    default_enable_local_optimization: bool = True
    progress_interval: int = 100  # optimization iterations between progress events

    # Week range applied when a teaching plan leaves it unset
    default_start_week: int = 1
    default_end_week: int = 20

    # Logging
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
