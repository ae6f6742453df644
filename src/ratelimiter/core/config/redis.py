"""
Redis store settings.
"""
from pydantic import Field, field_validator, ValidationInfo, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
import logging
import os

logger = logging.getLogger(__name__)


class RedisSettings(BaseSettings):
    """
    Defines settings for the shared Redis store every instance coordinates through.

    Security Note:
        - REDIS_PASSWORD must be set in staging/production to prevent
          unauthorized access to limiter state.
        - REDIS_SSL should be enabled whenever Redis is reached over an
          untrusted network.
    Performance Note:
        - REDIS_SOCKET_TIMEOUT bounds every script round-trip. A timeout is a
          store failure and triggers the fail-open/fail-closed policy, so keep
          it well below the caller's own request budget.
    """
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = Field(ge=1, le=65535, default=6379)
    REDIS_PASSWORD: SecretStr = SecretStr("")
    REDIS_SSL: bool = False
    REDIS_DB: int = Field(ge=0, default=0)
    REDIS_URL: str = Field(default="", validate_default=True)

    REDIS_SOCKET_TIMEOUT: float = Field(default=3.0, gt=0)
    REDIS_CONNECT_TIMEOUT: float = Field(default=5.0, gt=0)
    REDIS_MAX_CONNECTIONS: int = Field(default=50, ge=1)

    REDIS_CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    REDIS_CIRCUIT_RESET_TIMEOUT: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("REDIS_PASSWORD")
    @classmethod
    def validate_redis_password(cls, value: SecretStr, info: ValidationInfo) -> SecretStr:
        """
        Ensures REDIS_PASSWORD is set for staging/production environments.

        Raises:
            ValueError: If password is not set in staging/production.
        """
        app_env = info.data.get('APP_ENV') or os.getenv('APP_ENV', 'development')
        if app_env in ['staging', 'production'] and not value.get_secret_value():
            logger.error(f"REDIS_PASSWORD must be set in {app_env} environment.")
            raise ValueError("REDIS_PASSWORD must be set in staging/production environments")
        return value

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def assemble_redis_url(cls, v: str | None, info: ValidationInfo) -> str:
        """
        Assembles the Redis connection URL if not provided explicitly.

        Args:
            v: Explicitly provided URL or None.
            info: Validation context with other field values.

        Returns:
            Assembled or provided Redis URL.
        """
        if v:
            return v

        values = info.data
        protocol = "rediss" if values.get("REDIS_SSL") else "redis"
        redis_password = values.get("REDIS_PASSWORD")
        secret = redis_password.get_secret_value() if redis_password else ""
        password = f":{secret}@" if secret else ""

        url = f"{protocol}://{password}{values.get('REDIS_HOST')}:{values.get('REDIS_PORT')}/{values.get('REDIS_DB', 0)}"
        logger.debug("Assembled REDIS_URL (password masked for security).")
        return url
