"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthStack Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Identity ---
    device_id: str = "unknown"
    user_id: str | None = None  # falls back to device_id when unset

    # --- Gateway (all optional; no base URL = local-only mode) ---
    gateway_base_url: str | None = None
    gateway_port: int | None = None
    gateway_api_key: str | None = None
    gateway_username: str | None = None
    gateway_password: str | None = None
    request_timeout_seconds: float = 30.0

    # --- Sync behaviour ---
    sync_frequency: str = "manual"  # realtime | hourly | daily | manual
    enabled_data_types: list[str] = []  # empty = every known type
    auto_start: bool = False

    # --- Acquisition ---
    acquisition_source: str = "memory"  # memory | apple_health_export
    apple_health_export_path: str = "export.xml"

    # --- Ledger ---
    ledger_backend: str = "memory"  # memory | postgres
    database_url: str = ""  # postgres connection string for asyncpg

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "HEALTHSTACK_"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
