"""Configuration management and validation using Pydantic."""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Application configuration settings loaded from environment variables or .env files."""

    @staticmethod
    def get_env_file() -> str | None:
        """Determine which .env file to load based on environment variables.

        Returns:
            None if SKIP_ENV_FILE is set (Docker/direct env vars)
            .env.{APP_ENV} file path otherwise (defaults to .env.dev)
        """
        if os.getenv("SKIP_ENV_FILE"):
            return None
        env = os.getenv("APP_ENV", "dev")
        env_file = f".env.{env}"
        if not os.path.exists(env_file):
            raise FileNotFoundError(
                f"Environment file '{env_file}' not found. "
                f"Create it or set APP_ENV to 'dev' or 'production'."
            )
        return env_file

    model_config = SettingsConfigDict(
        env_file=get_env_file.__func__(),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # ==================== Application Settings ====================
    APP_NAME: str = "Tour Service"
    APP_ENV: str = "dev"  # "production" switches error rendering and secure cookies
    API_PREFIX: str = "/api/v1"

    # ==================== MongoDB ====================
    MONGO_URL: str  # Required, defined in .env files
    MONGO_DB_NAME: str = "tour_service"
    MONGO_MAX_POOL_SIZE: int = 100
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = 5000
    MONGO_CONNECT_TIMEOUT_MS: int = 10000

    # ==================== Database Resilience ====================
    DB_RETRY_MAX_ATTEMPTS: int = 3  # Health check ping attempts
    DB_RETRY_BASE_DELAY: float = 0.5  # Base delay for exponential backoff (seconds)

    # ==================== CORS Settings ====================
    CORS_ORIGINS: str = "http://localhost:3000"  # Comma-separated allowed origins

    # ==================== Pagination ====================
    DEFAULT_PAGE: int = 1
    DEFAULT_LIMIT: int = 100
    MAX_LIMIT: int = 1000

    # ==================== Field Validation ====================
    USER_NAME_MAX_LENGTH: int = 100
    USER_EMAIL_MAX_LENGTH: int = 255
    PASSWORD_MIN_LENGTH: int = 8
    TOUR_NAME_MIN_LENGTH: int = 10
    TOUR_NAME_MAX_LENGTH: int = 50

    # ==================== JWT Authentication ====================
    JWT_SECRET_KEY: str  # Required, defined in .env files
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_IN_DAYS: int = 90
    JWT_COOKIE_EXPIRES_IN_DAYS: int = 90
    JWT_COOKIE_NAME: str = "jwt"

    # ==================== Password Handling ====================
    BCRYPT_ROUNDS: int = 12
    PASSWORD_RESET_EXPIRES_MINUTES: int = 10

    # ==================== Email Delivery ====================
    EMAIL_HOST: str | None = None  # None logs messages instead of sending them
    EMAIL_PORT: int = 587
    EMAIL_USERNAME: str | None = None
    EMAIL_PASSWORD: str | None = None
    EMAIL_FROM: str = "Tour Service <noreply@tour-service.local>"
    EMAIL_USE_TLS: bool = True
    EMAIL_TIMEOUT: int = 10  # Seconds

    # ==================== Rate Limiting ====================
    RATE_LIMIT_AUTH: str = "10/minute"
    RATE_LIMIT_WRITE: str = "60/minute"
    RATE_LIMIT_READ: str = "100/minute"

    # ==================== Graceful Shutdown ====================
    GRACEFUL_SHUTDOWN_TIMEOUT: int = 30  # Max wait time for active requests (seconds)

    # ==================== Logging ====================
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_FILE: str | None = "app.log"  # None to disable file logging
    LOG_FORMAT: str = "console"  # "console" for dev, "json" for production

    # ==================== Redis Caching ====================
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_TTL: int = 300  # Default TTL in seconds (5 minutes)
    CACHE_ENABLED: bool = True  # Global cache toggle

    # ==================== Metrics ====================
    METRICS_ENABLED: bool = True

    @field_validator('MONGO_URL')
    @classmethod
    def validate_mongo_url(cls, v: str) -> str:
        """Validate that MONGO_URL is provided and properly formatted."""
        if not v:
            raise ValueError("MONGO_URL is required but not provided in environment variables")
        if not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("MONGO_URL must be a valid MongoDB connection string")
        return v

    @field_validator('JWT_SECRET_KEY')
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Validate that JWT_SECRET_KEY is provided and sufficiently long."""
        if not v:
            raise ValueError("JWT_SECRET_KEY is required but not provided in environment variables")
        if len(v) < 32:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters long for security")
        return v

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    def get_cors_origins(self) -> list[str]:
        """Parse CORS_ORIGINS into a list of allowed origins."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

settings = Settings()
