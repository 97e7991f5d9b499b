"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Algorithm tunables (rate limits, TTLs, intervals) live in
    ``src/activity_sync/sync_config.yaml``; this class only carries
    deployment settings and secrets.
    """

    # --- App ---
    app_name: str = "Leaderboard Activity Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Adversus ---
    adversus_base_url: str = "https://api.adversus.dk/v1"
    adversus_username: str = ""
    adversus_password: str = ""  # server-side only

    # --- Database ---
    database_url: str = ""  # empty = in-memory store (local runs only)
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # --- Sync engine ---
    sync_config_path: str | None = None  # override for sync_config.yaml
    scheduler_autostart: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
