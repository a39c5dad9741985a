from __future__ import annotations

import os

DEFAULT_BASE_CURRENCY = "VND"
DEFAULT_DATABASE_URL = "sqlite:///./fintrack.db"
DEFAULT_RATE_CACHE_TTL_SECONDS = 60 * 60


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_base_currency() -> str:
    raw = os.getenv("BASE_CURRENCY", DEFAULT_BASE_CURRENCY)
    normalized = raw.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        return DEFAULT_BASE_CURRENCY
    return normalized


def get_open_exchange_rates_app_id() -> str | None:
    value = os.getenv("OPEN_EXCHANGE_RATES_APP_ID", "").strip()
    return value or None


def get_rate_cache_ttl_seconds() -> int:
    raw = os.getenv("RATE_CACHE_TTL_SECONDS")
    if not raw:
        return DEFAULT_RATE_CACHE_TTL_SECONDS
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_RATE_CACHE_TTL_SECONDS
    return value if value > 0 else DEFAULT_RATE_CACHE_TTL_SECONDS


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")


def scheduler_enabled() -> bool:
    return os.getenv("ENABLE_SCHEDULER", "").strip().lower() in {"1", "true", "yes", "on"}
