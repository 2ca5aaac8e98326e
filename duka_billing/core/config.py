from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Duka Billing"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/duka_billing.db"
    FRONTEND_URL: str = "https://smartduka.co.ke"

    # Broker for the dispatch layer; empty disables queueing (jobs run inline)
    REDIS_URL: str = ""
    DISPATCH_PROBE_TIMEOUT_SECONDS: float = 3.0
    DISPATCH_JOB_RESULT_TTL_SECONDS: int = 3600
    QUEUE_URGENT: str = "duka:queue:urgent"
    QUEUE_NORMAL: str = "duka:queue:normal"
    QUEUE_LOW: str = "duka:queue:low"

    # Payment provider
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 7
    DATA_RETENTION_DAYS: int = 30
    EXPIRY_WARNING_DAYS: list[int] = [7, 3, 1]
    GRACE_REMINDER_DAYS: list[int] = [1, 3, 5]
    SWEEP_LOCK_TTL_SECONDS: int = 3600

    # Webhook event ledger
    WEBHOOK_EVENT_RETENTION_DAYS: int = 90
    WEBHOOK_MAX_RETRIES: int = 5
    WEBHOOK_LOCK_TIMEOUT_SECONDS: int = 300

    # Transports
    TRANSPORT_TIMEOUT_SECONDS: float = 15.0
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_FROM_EMAIL: str = "billing@smartduka.co.ke"
    SMTP_FROM_NAME: str = "SmartDuka Billing"
    SMS_GATEWAY_URL: str = ""
    SMS_GATEWAY_TOKEN: str = ""
    WHATSAPP_GATEWAY_URL: str = ""
    WHATSAPP_GATEWAY_TOKEN: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_webhook_secret)


settings = Settings()
