from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "http://localhost:3000"
    # Base for absolute links in notification emails
    PUBLIC_APP_URL: str = "http://localhost:3000"

    # Database – SQLite for local development
    DATABASE_URL: str = "sqlite+aiosqlite:///./portal.db"

    # Redis (optional – Celery disabled unless USE_CELERY is set)
    REDIS_URL: str = "redis://localhost:6379/0"
    USE_CELERY: bool = False

    # Security
    SECRET_KEY: str = "dev_secret_key_change_in_production_min_32_chars!!"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Web Push (VAPID). Generate with: vapid --gen
    # Leave the private key empty to disable push delivery.
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_CLAIMS_SUB: str = "mailto:admin@example.com"

    # Push fan-out
    PUSH_TTL_SECONDS: int = 24 * 60 * 60
    PUSH_MAX_ATTEMPTS: int = 3
    PUSH_BACKOFF_SECONDS: float = 1.0
    PUSH_BACKOFF_MAX_SECONDS: float = 30.0
    PUSH_MAX_CONCURRENCY: int = 16
    PUSH_DEFAULT_ICON: str = "/logo.png"
    PUSH_DEFAULT_BADGE: str = "/logo.png"
    PUSH_TAG: str = "portal-notification"
    STALE_SUBSCRIPTION_DAYS: int = 30

    # E-Mail (SendGrid). Leave the API key empty to disable the email channel.
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "notifications@example.com"
    EMAIL_SENDER_NAME: str = "Client Portal"

    # Sync client polling (seconds)
    NOTIFICATION_POLL_INTERVAL: float = 30.0
    STATS_POLL_INTERVAL: float = 60.0
    POLL_FAILURE_THRESHOLD: int = 3

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def push_enabled(self) -> bool:
        return bool(self.VAPID_PUBLIC_KEY and self.VAPID_PRIVATE_KEY)

    @property
    def email_enabled(self) -> bool:
        return bool(self.SENDGRID_API_KEY and self.SENDGRID_FROM_EMAIL)

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
