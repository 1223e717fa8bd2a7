import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from gtfs_analyze.database import DEFAULT_DATABASE_URL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    # Nothing is ever logged above CRITICAL
    "silent": logging.CRITICAL + 1,
}


@dataclass(frozen=True)
class Settings:
    database_url: str
    static_gtfs_url: str
    vehicle_positions_url: str
    api_key: str
    api_key_header: str
    request_timeout_seconds: float
    poll_interval_seconds: float
    on_time_threshold_minutes: float
    log_level: str

    def request_headers(self) -> dict:
        """HTTP headers for feed requests, carrying the API key when one is configured"""
        if not self.api_key:
            return {}
        return {self.api_key_header: self.api_key}


def _parse_float(raw: str, name: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def load_settings() -> Settings:
    load_dotenv()

    log_level = os.getenv("LOG_LEVEL", "info").strip().lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
        static_gtfs_url=os.getenv("STATIC_GTFS_URL", "").strip(),
        vehicle_positions_url=os.getenv("VEHICLE_POSITIONS_URL", "").strip(),
        api_key=os.getenv("GTFS_API_KEY", "").strip(),
        api_key_header=os.getenv("GTFS_API_KEY_HEADER", "api_key").strip() or "api_key",
        request_timeout_seconds=_parse_float(
            os.getenv("REQUEST_TIMEOUT_SECONDS", "30"), "REQUEST_TIMEOUT_SECONDS"
        ),
        poll_interval_seconds=_parse_float(
            os.getenv("POLL_INTERVAL_SECONDS", "60"), "POLL_INTERVAL_SECONDS"
        ),
        on_time_threshold_minutes=_parse_float(
            os.getenv("ON_TIME_THRESHOLD_MINUTES", "7"), "ON_TIME_THRESHOLD_MINUTES"
        ),
        log_level=log_level,
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging once; later calls only adjust the level"""
    numeric_level = LOG_LEVELS[(level or "info").lower()]
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root.setLevel(numeric_level)
