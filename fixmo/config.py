"""
Fixmo settings, read from the environment and .env via pydantic-settings.
DATABASE_URL and JWT_SECRET have no defaults, so a misconfigured process fails at startup.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    cors_origins: str = "http://localhost:3000,http://localhost:8081"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 5.0

    # Auth - tokens are issued by the auth service, we only verify them
    jwt_secret: str
    jwt_algorithm: str = "HS256"

    # SendGrid
    sendgrid_api_key: str = ""
    from_email_transactional: str = "noreply@fixmo.app"
    from_name_transactional: str = "Fixmo"

    # Expo push notifications
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    expo_access_token: str = ""
    push_timeout_seconds: float = 10.0

    # Sentry
    sentry_dsn: str = ""

    # Worker schedules (seconds)
    conversation_reconcile_interval_seconds: int = 3600
    warranty_sweep_interval_seconds: int = 21600
    outbox_poll_interval_seconds: int = 30
    run_sweeps_on_startup: bool = False

    # Outbox delivery
    outbox_batch_size: int = 50

    # Backjob apply lock
    backjob_lock_ttl_seconds: int = 30
    backjob_lock_wait_seconds: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
