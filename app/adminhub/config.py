import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    api_prefix: str
    access_decision_timeout_ms: int
    db_statement_timeout_ms: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///adminhub.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        api_prefix=_getenv("API_PREFIX", "/api/v1").rstrip("/"),
        access_decision_timeout_ms=_getenv_int("ACCESS_DECISION_TIMEOUT_MS", 2000),
        db_statement_timeout_ms=_getenv_int("DB_STATEMENT_TIMEOUT_MS", 5000),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "API_PREFIX": s.api_prefix,
        "ACCESS_DECISION_TIMEOUT_MS": s.access_decision_timeout_ms,
        "DB_STATEMENT_TIMEOUT_MS": s.db_statement_timeout_ms,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "JSON_SORT_KEYS": False,
        # request body limit (1MB); the API only accepts small JSON documents
        "MAX_CONTENT_LENGTH": 1024 * 1024,
    }
