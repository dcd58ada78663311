import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./salonbook.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0)

    DEFAULT_GRANULARITY_MIN = _get_int("DEFAULT_GRANULARITY_MIN", 10)
    AVAILABILITY_MAX_RANGE_DAYS = _get_int("AVAILABILITY_MAX_RANGE_DAYS", 62)

    BOOKING_MAX_ATTEMPTS = _get_int("BOOKING_MAX_ATTEMPTS", 3)
    DEFAULT_CLIENT_NAME = os.getenv("DEFAULT_CLIENT_NAME", "Guest").strip() or "Guest"
    DEFAULT_BOOKING_SOURCE = os.getenv("DEFAULT_BOOKING_SOURCE", "api").strip() or "api"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    HOST = os.getenv("HOST", "127.0.0.1").strip() or "127.0.0.1"
    PORT = _get_int("PORT", 8787)
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    # Local web frontends on any port
    CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX", r"^http://localhost:\d+$").strip()


settings = Settings()
