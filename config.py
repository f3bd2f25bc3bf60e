import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./coffee_ledger.db"))
    base_url: str = field(default_factory=lambda: os.getenv("BASE_URL", "http://localhost:8000"))
    session_secret: str = field(default_factory=lambda: os.getenv("SESSION_SECRET", "change-me"))
    session_ttl_seconds: int = field(default_factory=lambda: _env_int("SESSION_TTL_SECONDS", 12 * 3600))
    store_timeout_seconds: float = field(default_factory=lambda: _env_float("STORE_TIMEOUT_SECONDS", 5.0))
    store_retry_attempts: int = field(default_factory=lambda: _env_int("STORE_RETRY_ATTEMPTS", 5))
    store_retry_backoff: float = field(default_factory=lambda: _env_float("STORE_RETRY_BACKOFF", 0.05))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


def get_settings() -> Settings:
    return Settings()
