from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_db_path: str
    database_url: str
    webhook_secret: str
    provider_api_key: str
    provider_base_url: str
    provider_timeout_seconds: int
    poll_interval_seconds: float
    poll_max_iterations: int
    poll_on_launch: bool
    cleanup_grace_hours: int
    minutes_per_recipient: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv(
        "PERSISTENCE_DB_PATH", "data/campaign_minutes.sqlite3"
    ).strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        webhook_secret=os.getenv("WEBHOOK_SECRET", "").strip(),
        provider_api_key=os.getenv("PROVIDER_API_KEY", "").strip(),
        provider_base_url=os.getenv(
            "PROVIDER_BASE_URL", "https://api.elevenlabs.io/v1/convai"
        ).strip(),
        provider_timeout_seconds=max(1, _int_env("PROVIDER_TIMEOUT_SECONDS", 15)),
        poll_interval_seconds=max(0.0, _float_env("POLL_INTERVAL_SECONDS", 10.0)),
        poll_max_iterations=max(1, _int_env("POLL_MAX_ITERATIONS", 100)),
        poll_on_launch=_bool_env("POLL_ON_LAUNCH", True),
        cleanup_grace_hours=max(0, _int_env("CLEANUP_GRACE_HOURS", 4)),
        minutes_per_recipient=max(1, _int_env("MINUTES_PER_RECIPIENT", 2)),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
