"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    app_url: str = Field(default="", alias="APP_URL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Vertex AI (Imagen / Gemini image models)
    vertex_project_id: str = Field(default="", alias="VERTEX_PROJECT_ID")
    vertex_location: str = Field(default="us-central1", alias="VERTEX_LOCATION")
    google_credentials_json: str = Field(default="", alias="GOOGLE_APPLICATION_CREDENTIALS_JSON")
    generation_model: str = Field(default="", alias="GENERATION_MODEL")
    default_resolution: str = Field(default="2K", alias="DEFAULT_RESOLUTION")

    # Replicate (URL-returning models and upscaler)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    upscale_model: str = Field(default="nightmareai/real-esrgan", alias="UPSCALE_MODEL")

    # Object storage (Cloudflare R2, S3 compatible)
    r2_account_id: str = Field(default="", alias="R2_ACCOUNT_ID")
    r2_access_key_id: str = Field(default="", alias="R2_ACCESS_KEY_ID")
    r2_secret_access_key: str = Field(default="", alias="R2_SECRET_ACCESS_KEY")
    r2_bucket: str = Field(default="", alias="R2_BUCKET")
    r2_endpoint_url: str = Field(default="", alias="R2_ENDPOINT_URL")
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")
    backup_bucket: str = Field(default="", alias="BACKUP_BUCKET")

    # Queue dispatch
    dispatcher: str = Field(default="local", alias="DISPATCHER")
    qstash_url: str = Field(default="https://qstash.upstash.io", alias="QSTASH_URL")
    qstash_token: str = Field(default="", alias="QSTASH_TOKEN")
    worker_secret: str = Field(default="", alias="WORKER_SECRET")

    # Scheduler shared secret (scavenger)
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Generation budgets
    image_max_dimension: int = Field(default=768, alias="IMAGE_MAX_DIMENSION")
    max_reference_images: int = Field(default=3, alias="MAX_REFERENCE_IMAGES")
    retry_max_attempts: int = Field(default=5, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=2.0, alias="RETRY_BASE_DELAY")
    rate_limit_initial_delay: float = Field(default=30.0, alias="RATE_LIMIT_INITIAL_DELAY")
    retry_max_delay: float = Field(default=60.0, alias="RETRY_MAX_DELAY")
    generation_deadline_seconds: float = Field(default=240.0, alias="GENERATION_DEADLINE_SECONDS")
    provider_request_timeout: float = Field(default=180.0, alias="PROVIDER_REQUEST_TIMEOUT")

    # Worker I/O budgets
    fetch_timeout_seconds: float = Field(default=60.0, alias="FETCH_TIMEOUT_SECONDS")
    upload_timeout_seconds: float = Field(default=60.0, alias="UPLOAD_TIMEOUT_SECONDS")

    # Scavenger
    scavenger_threshold_minutes: int = Field(default=10, alias="SCAVENGER_THRESHOLD_MINUTES")
    scavenger_batch_limit: int = Field(default=200, alias="SCAVENGER_BATCH_LIMIT")

    # Change stream
    events_poll_interval: float = Field(default=1.0, alias="EVENTS_POLL_INTERVAL")
    events_max_seconds: float = Field(default=900.0, alias="EVENTS_MAX_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def worker_url(self) -> str:
        """Absolute URL of the queue-invoked worker endpoint ("" when APP_URL unset)."""
        if not self.app_url:
            return ""
        return f"{self.app_url.rstrip('/')}/worker/generate"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.vertex_project_id and not self.replicate_api_token:
            missing.append(
                "VERTEX_PROJECT_ID or REPLICATE_API_TOKEN: at least one generation provider"
            )

        if not self.r2_bucket:
            missing.append("R2_BUCKET: Bucket receiving generated images")

        if not self.public_base_url:
            missing.append("PUBLIC_BASE_URL: Public base URL of the R2 bucket")

        if self.dispatcher == "qstash" and not self.qstash_token:
            missing.append("QSTASH_TOKEN: Required when DISPATCHER=qstash")

        if self.dispatcher == "qstash" and not self.app_url:
            missing.append("APP_URL: Public URL QStash delivers worker requests to")

        if not self.cron_secret:
            missing.append("CRON_SECRET: Shared secret for the scavenger endpoint")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
