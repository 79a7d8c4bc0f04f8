"""Application configuration loaded from environment variables."""

from datetime import date, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings

# Default span of the `dump-history` CLI when no start date is given.
DEFAULT_HISTORY_DAYS = 365


def yesterday() -> date:
    return date.today() - timedelta(days=1)


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Fitbit Exporter"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # --- Fitbit OAuth ---
    fitbit_client_id: str
    fitbit_client_secret: str  # server-side only, never logged
    fitbit_refresh_token: str  # initial token; rotated in memory on every refresh

    # --- Polling ---
    # Fitbit allows 150 requests per user per hour.
    poll_interval_seconds: float = 900
    unit_system: Literal["metric", "en_US", "en_GB"] = "metric"

    # --- Startup backfill (disabled unless a start date is set) ---
    backfill_start_date: date | None = None
    backfill_end_date: date | None = None  # defaults to yesterday

    # --- HTTP ---
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080

    # --- Tuning ---
    exporter_config_path: Path | None = None  # overrides the bundled exporter_config.yaml

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def backfill_window(self) -> tuple[date, date] | None:
        """The startup backfill range, or None when no start date is set."""
        if self.backfill_start_date is None:
            return None
        return self.backfill_start_date, self.backfill_end_date or yesterday()


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
