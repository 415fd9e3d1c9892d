import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    order_expiry_hours: int
    order_lock_ttl_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pos.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        order_expiry_hours=_getenv_int("ORDER_EXPIRY_HOURS", 24),
        order_lock_ttl_seconds=_getenv_int("ORDER_LOCK_TTL_SECONDS", 300),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "ORDER_EXPIRY_HOURS": s.order_expiry_hours,
        "ORDER_LOCK_TTL_SECONDS": s.order_lock_ttl_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # form posts only; loadouts and item lists are small JSON blobs
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
