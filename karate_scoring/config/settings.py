"""
Engine settings loaded from the environment (.env supported).
"""
import os

from dotenv import load_dotenv

load_dotenv()


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}")


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./karate_scoring.db")

    # Upper bound on waiting for a per-round / per-match lock
    LOCK_TIMEOUT_SECONDS: float = get_float_env("LOCK_TIMEOUT_SECONDS", 10.0)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
