"""
Application configuration
"""

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "fhirlink API"
    APP_VERSION: str = "0.1.0"
    # SECURITY: Debug mode defaults to False to prevent stack trace exposure in production
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    API_BASE_URL: str = "http://localhost:8000"

    # Database
    POSTGRES_USER: str = "fhirlink"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "fhirlink"

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # "memory" keeps every repository in-process, "postgres" uses the SQL repositories
    STORAGE_BACKEND: str = "memory"

    # Redis
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Security
    SECRET_KEY: str
    STATE_TOKEN_SECRET: Optional[str] = None  # Falls back to SECRET_KEY
    JWT_ALGORITHM: str = "HS256"
    ADMIN_API_TOKEN: Optional[str] = None

    @property
    def STATE_SIGNING_KEY(self) -> str:
        return self.STATE_TOKEN_SECRET or self.SECRET_KEY

    # Token encryption keyring: "kid:fernet-key,kid:fernet-key", first entry encrypts
    TOKEN_ENCRYPTION_KEYS: str = ""

    # OAuth
    OAUTH_REDIRECT_URI: str = "http://localhost:8000/callback"
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 1

    # FHIR
    FHIR_MAX_PAGES: int = 10

    # Token refresh scheduler
    TOKEN_REFRESH_INTERVAL_SECONDS: int = 300
    TOKEN_REFRESH_INITIAL_DELAY_SECONDS: int = 30
    TOKEN_REFRESH_HORIZON_SECONDS: int = 300

    # Webhooks
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_RETRY_INTERVAL_SECONDS: int = 60
    WEBHOOK_RETRY_BATCH_SIZE: int = 50
    WEBHOOK_USER_AGENT: str = "fhirlink-Webhook/1.0"

    # Rate limiting (sliding window, per identity and category)
    RATE_LIMIT_ENFORCE: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_DEFAULT_MAX: int = 1000
    RATE_LIMIT_WIDGET_MAX: int = 100
    RATE_LIMIT_OAUTH_MAX: int = 50
    RATE_LIMIT_SENSITIVE_MAX: int = 20
    # Only honour X-Forwarded-For when deployed behind a proxy that sets it
    TRUST_PROXY_HEADERS: bool = False

    # Connect widget handshake
    WIDGET_TOKEN_TTL_MINUTES: int = 30
    PUBLIC_TOKEN_TTL_MINUTES: int = 30

    # Background workers (refresh scheduler, webhook retries)
    BACKGROUND_TASKS_ENABLED: bool = True

    # CORS (comma-separated list of allowed origins)
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def rate_limit_policies(self) -> Dict[str, int]:
        return {
            "default": self.RATE_LIMIT_DEFAULT_MAX,
            "widget": self.RATE_LIMIT_WIDGET_MAX,
            "oauth": self.RATE_LIMIT_OAUTH_MAX,
            "sensitive": self.RATE_LIMIT_SENSITIVE_MAX,
        }

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
