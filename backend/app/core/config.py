from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "mysql+pymysql://eduuser:edupassword@db:3306/education?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Sessions (issued by the auth service, read here)
    SESSION_TIMEOUT_MINUTES: int = 60

    # Monobank acquiring
    MONOBANK_TOKEN: str = ""
    MONOBANK_BASE_URL: str = "https://api.monobank.ua/api"
    MONOBANK_WEBHOOK_SECRET: str = ""
    MONOBANK_WEBHOOK_URL: str = "http://localhost:8000/api/payments/webhook"
    MONOBANK_REDIRECT_URL: str = "http://localhost:3000/payments/result"
    MONOBANK_INVOICE_VALIDITY_SECONDS: int = 86400
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    # Resend
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"

    # Service
    SITE_URL: str = "http://localhost:3000"
    SITE_NAME: str = "Education Platform"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # Scheduler
    SCHEDULER_TOKEN: str = ""
    SCHEDULER_TIMEZONE: str = "Europe/Kyiv"
    SWEEP_INTERVAL_MINUTES: int = 10
    EXPIRING_SOON_DAYS: int = 7
    ABANDONED_PAYMENT_RETENTION_HOURS: int = 24
    STALE_PENDING_SUBSCRIPTION_HOURS: int = 48
    OPEN_PAYMENT_POLL_MINUTES: int = 30
    SYNC_RETRY_MAX_ATTEMPTS: int = 10

    # Subscriptions
    DEFAULT_COURSE_PERIOD: str = "12_months"

    # Environment
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
