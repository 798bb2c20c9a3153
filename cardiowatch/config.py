"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "CardioWatch"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Storage ---
    storage_backend: str = "memory"  # memory | postgres
    database_url: str = ""  # postgres connection string for asyncpg

    # --- Credential vault ---
    encryption_key: str = Field(min_length=32)  # server-side only, never expose

    # --- Auth (tokens are issued by the external auth service) ---
    jwt_secret: str = Field(min_length=32)
    jwt_algorithm: str = "HS256"

    # --- Google Fit ---
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/v1/wearables/callback/google_fit"
    google_pubsub_token: str = ""

    # --- Fitbit ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = "http://localhost:8000/api/v1/wearables/callback/fitbit"
    fitbit_verification_code: str = ""

    # --- Garmin ---
    garmin_client_id: str = ""
    garmin_client_secret: str = ""
    garmin_redirect_uri: str = "http://localhost:8000/api/v1/wearables/callback/garmin"
    garmin_callback_token: str = ""

    # --- Withings ---
    withings_client_id: str = ""
    withings_client_secret: str = ""
    withings_redirect_uri: str = "http://localhost:8000/api/v1/wearables/callback/withings"
    withings_callback_token: str = ""

    # --- Push providers ---
    apple_webhook_secret: str = ""
    health_connect_webhook_secret: str = ""
    samsung_webhook_secret: str = ""

    # --- Sync scheduler ---
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 300

    # --- Trend configuration (defaults to the bundled YAML) ---
    trend_config_path: str | None = None

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 120

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
