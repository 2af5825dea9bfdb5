from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import Dict, List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(default="sqlite:///./desti_bookings.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Security
    secret_key: str = Field(
        default="dev-secret-key-at-least-32-characters-long-for-development",
        alias="JWT_SECRET"
    )
    algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=60 * 24, alias="JWT_EXPIRE_MINUTES")
    min_password_length: int = 8

    # CORS - Frontend URLs (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS"
    )
    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # ==============================================
    # Stripe
    # ==============================================
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE")
    stripe_timeout_seconds: int = Field(default=20, alias="STRIPE_TIMEOUT_SECONDS")
    stripe_max_network_retries: int = Field(default=2, alias="STRIPE_MAX_NETWORK_RETRIES")

    # ==============================================
    # Inventory suppliers
    # ==============================================
    booking_com_base_url: str = Field(
        default="https://distribution-xml.booking.com/json/bookings",
        alias="BOOKING_COM_BASE_URL"
    )
    booking_com_username: str = Field(default="", alias="BOOKING_COM_USERNAME")
    booking_com_password: str = Field(default="", alias="BOOKING_COM_PASSWORD")

    skyscanner_base_url: str = Field(
        default="https://partners.api.skyscanner.net",
        alias="SKYSCANNER_BASE_URL"
    )
    skyscanner_api_key: str = Field(default="", alias="SKYSCANNER_API_KEY")

    provider_timeout_seconds: float = Field(default=15.0, alias="PROVIDER_TIMEOUT_SECONDS")
    provider_max_retries: int = Field(default=3, alias="PROVIDER_MAX_RETRIES")

    # Supplier webhook signing secrets, format: "booking.com:secret1,skyscanner:secret2"
    supplier_webhook_secrets: str = Field(default="", alias="SUPPLIER_WEBHOOK_SECRETS")
    supplier_webhook_replay_window_seconds: int = Field(default=300, alias="SUPPLIER_WEBHOOK_REPLAY_WINDOW")
    webhook_max_attempts: int = Field(default=5, alias="WEBHOOK_MAX_ATTEMPTS")
    # A PROCESSING delivery older than this is treated as abandoned and reprocessed
    webhook_processing_lease_seconds: int = Field(default=300, alias="WEBHOOK_PROCESSING_LEASE_SECONDS")

    # ==============================================
    # Notifications (SMTP)
    # ==============================================
    notifications_enabled: bool = Field(default=True, alias="NOTIFICATIONS_ENABLED")
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    smtp_timeout_seconds: int = Field(default=10, alias="SMTP_TIMEOUT_SECONDS")
    from_email: str = Field(default="bookings@desti.app", alias="FROM_EMAIL")
    notification_workers: int = Field(default=2, alias="NOTIFICATION_WORKERS")

    # ==============================================
    # Booking rules
    # ==============================================
    booking_reference_prefix: str = Field(default="DESTI", alias="BOOKING_REFERENCE_PREFIX")
    default_currency: str = Field(default="USD", alias="DEFAULT_CURRENCY")
    modification_deadline_hours: int = Field(default=24, alias="MODIFICATION_DEADLINE_HOURS")
    transition_max_attempts: int = Field(default=3, alias="TRANSITION_MAX_ATTEMPTS")

    # Worker settings (runs inside FastAPI process)
    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_poll_interval: int = Field(default=60, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=50, alias="WORKER_BATCH_SIZE")
    pending_booking_timeout_minutes: int = Field(default=30, alias="PENDING_BOOKING_TIMEOUT_MINUTES")

    # Rate limiting and logging
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate JWT secret is strong enough"""
        if not v:
            raise ValueError("JWT_SECRET is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins or ["http://localhost:3000"]

    @property
    def supplier_secret_map(self) -> Dict[str, str]:
        """Parse supplier webhook secrets into {supplier_name: secret}"""
        secrets = {}
        for entry in self.supplier_webhook_secrets.split(","):
            name, sep, secret = entry.strip().partition(":")
            if sep and name.strip() and secret.strip():
                secrets[name.strip().lower()] = secret.strip()
        return secrets

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
