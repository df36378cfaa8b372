# listing_bot/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "scanner"] = "all"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5

    # Session Management
    session_ttl_seconds: int = 3600  # hard ceiling for an in-flight submission
    debounce_window_seconds: int = 60  # inactivity before buffered input is processed

    # Submission pipeline
    min_media_items: int = 5
    max_media_items: int = 12

    # Expiry scanner
    scanner_enabled: bool = True
    scanner_interval_seconds: float = 10.0
    scanner_batch_size: int = 500  # max sessions inspected per scan
    scanner_stall_after_seconds: float | None = None  # EXTRACTING idle limit; derived when unset
    cron_secret: str | None = None  # Bearer secret for POST /cron/process
    metrics_token: str | None = None  # Bearer token for GET /metrics; open when unset outside prod
    enable_request_logging: bool = True

    # Inbound anti-spam
    chat_rate_limit_per_minute: int = 60

    # Meta WhatsApp Cloud API
    meta_access_token: str | None = None
    meta_phone_number_id: str | None = None
    meta_webhook_verify_token: str | None = None
    meta_graph_api_version: str = "v21.0"
    meta_app_secret: str | None = None  # App secret for X-Hub-Signature-256 verification
    require_webhook_validation: bool = True

    # S3/Bucket Storage (listing photos)
    s3_endpoint_url: str | None = None  # e.g., https://s3.amazonaws.com or https://xyz.r2.cloudflarestorage.com
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket_name: str | None = None
    s3_region: str = "auto"
    s3_public_url: str | None = None  # Public URL prefix for serving files (e.g., https://cdn.example.com)
    s3_force_path_style: bool = True
    s3_temp_prefix: str = "intake_temp"
    s3_permanent_prefix: str = "listings"

    # Extraction (Google Gemini REST API)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    extraction_timeout_seconds: int = 30
    extraction_retries: int = 2

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def s3_enabled(self) -> bool:
        """Check if S3 storage is configured"""
        return bool(
            self.s3_endpoint_url
            and self.s3_access_key
            and self.s3_secret_key
            and self.s3_bucket_name
        )

    @property
    def meta_enabled(self) -> bool:
        """Check if Meta Cloud API is configured"""
        return bool(
            self.meta_access_token
            and self.meta_phone_number_id
            and self.meta_webhook_verify_token
        )

    @property
    def stall_after_seconds(self) -> float:
        """How long a session may sit in EXTRACTING before the scanner reaps it."""
        if self.scanner_stall_after_seconds:
            return self.scanner_stall_after_seconds
        return float(self.extraction_timeout_seconds * (self.extraction_retries + 1) * 3)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("meta_access_token", self.meta_access_token),
            ("meta_phone_number_id", self.meta_phone_number_id),
            ("meta_webhook_verify_token", self.meta_webhook_verify_token),
            ("gemini_api_key", self.gemini_api_key),
            ("s3_bucket_name", self.s3_bucket_name),
        ]

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.meta_enabled:
        warnings.append("Meta Cloud API is not fully configured (outbound messages will fail).")
    if s.require_webhook_validation and not s.meta_app_secret:
        warnings.append("require_webhook_validation=True but meta_app_secret is not set (signature checks are skipped).")

    if not s.s3_enabled:
        warnings.append("S3 storage is not configured (inbound photos cannot be stored).")
    elif not s.s3_public_url:
        warnings.append("s3_enabled=True but s3_public_url is not set (extraction and prompts receive internal URLs).")

    if not s.gemini_api_key:
        warnings.append("gemini_api_key is not set (every submission will be reported as not recognized).")

    if s.min_media_items > s.max_media_items:
        warnings.append(
            f"min_media_items={s.min_media_items} exceeds max_media_items={s.max_media_items}: no submission can pass."
        )

    if s.debounce_window_seconds >= s.session_ttl_seconds:
        warnings.append("debounce_window_seconds >= session_ttl_seconds: sessions may expire before processing.")

    if s.scanner_interval_seconds > s.debounce_window_seconds:
        warnings.append("scanner_interval_seconds exceeds the debounce window: processing latency will be noticeable.")

    if s.run_mode == "web" and not s.cron_secret:
        warnings.append("run_mode=web without cron_secret: POST /cron/process is open to anyone.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
