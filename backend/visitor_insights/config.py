"""Environment-driven settings for the ingestion pipeline."""
from __future__ import annotations

import os

DEFAULT_DATABASE_URL = "sqlite:///./ingestion.db"
DEFAULT_GEOCODE_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_GEOCODE_USER_AGENT = "VisitorInsights/1.0"


def _get_env_setting(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_float_setting(name: str, default: float) -> float:
    raw = _get_env_setting(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def _get_int_setting(name: str, default: int) -> int:
    raw = _get_env_setting(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def get_database_url() -> str:
    return _get_env_setting("INGESTION_DATABASE_URL", DEFAULT_DATABASE_URL)


def get_geo_provider() -> str:
    return _get_env_setting("INGESTION_GEO_PROVIDER", "ipinfo").lower()


def get_geo_api_key() -> str | None:
    return os.environ.get("INGESTION_GEO_API_KEY") or None


def get_geo_timeout_seconds() -> float:
    return _get_float_setting("INGESTION_GEO_TIMEOUT_SECONDS", 5.0)


def get_geocode_url() -> str:
    return _get_env_setting("INGESTION_GEOCODE_URL", DEFAULT_GEOCODE_URL)


def get_geocode_user_agent() -> str:
    # Nominatim rejects requests without an identifying agent.
    return _get_env_setting("INGESTION_GEOCODE_USER_AGENT", DEFAULT_GEOCODE_USER_AGENT)


def get_geocode_min_interval_seconds() -> float:
    return _get_float_setting("INGESTION_GEOCODE_MIN_INTERVAL_SECONDS", 1.0)


def get_geocode_default_country() -> str:
    return _get_env_setting("INGESTION_GEOCODE_DEFAULT_COUNTRY", "US")


def get_aggregation_workers() -> int:
    return max(1, _get_int_setting("INGESTION_AGGREGATION_WORKERS", 1))


def get_raw_event_batch_size() -> int:
    return max(1, _get_int_setting("INGESTION_RAW_EVENT_BATCH_SIZE", 1000))
