"""
Application-wide settings.
"""
from pydantic import Field
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Defines process-wide settings like project name, environment and logging.

    Performance Note:
        - LOG_JSON should stay enabled in production; console rendering is
          noticeably slower under high request volume.
    """
    PROJECT_NAME: str = "ratelimiter"
    VERSION: str = "0.1.0"
    APP_ENV: str = "development"
    DEBUG: bool = False

    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_JSON: bool = True
