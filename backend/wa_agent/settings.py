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


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    webhook_secret: str
    admin_auth_enabled: bool
    admin_secret: str
    gemini_api_key: str
    gemini_model: str
    gemini_base_url: str
    gemini_timeout_seconds: int
    green_api_base_url: str
    green_api_id_instance: str
    green_api_token: str
    green_api_timeout_seconds: int
    pacing_min_ms: int
    pacing_max_ms: int
    history_window: int
    reply_max_attempts: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/wa_agent.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    pacing_min_ms = max(0, _int_env("PACING_MIN_MS", 1000))
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        webhook_secret=os.getenv("WEBHOOK_SECRET", "").strip(),
        admin_auth_enabled=_bool_env("ADMIN_AUTH_ENABLED", False),
        admin_secret=os.getenv("ADMIN_SECRET", "").strip(),
        gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash").strip(),
        gemini_base_url=os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
        ).strip(),
        gemini_timeout_seconds=max(1, _int_env("GEMINI_TIMEOUT_SECONDS", 20)),
        green_api_base_url=os.getenv("GREEN_API_BASE_URL", "https://api.green-api.com").strip(),
        green_api_id_instance=os.getenv("GREEN_API_ID_INSTANCE", "").strip(),
        green_api_token=os.getenv("GREEN_API_TOKEN", "").strip(),
        green_api_timeout_seconds=max(1, _int_env("GREEN_API_TIMEOUT_SECONDS", 15)),
        pacing_min_ms=pacing_min_ms,
        pacing_max_ms=max(pacing_min_ms, _int_env("PACING_MAX_MS", 5000)),
        history_window=max(1, min(100, _int_env("HISTORY_WINDOW", 30))),
        reply_max_attempts=max(1, _int_env("REPLY_MAX_ATTEMPTS", 3)),
    )
