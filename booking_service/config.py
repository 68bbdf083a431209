import os
from dotenv import load_dotenv

# Resolve project root (the directory holding .env and credentials/)
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
load_dotenv(dotenv_path=os.path.join(project_root, ".env"))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Config:
    SERVICE_NAME = "booking-service"
    VERSION = "0.2.0"

    GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID")
    SERVICE_ACCOUNT_FILE = os.path.abspath(
        os.path.join(project_root, os.getenv("SERVICE_ACCOUNT_FILE", "credentials/service_account.json"))
    )
    DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

    # Stage budgets, milliseconds
    AUTH_INIT_TIMEOUT_MS = _env_int("AUTH_INIT_TIMEOUT_MS", 5000)
    GET_CLIENT_TIMEOUT_MS = _env_int("GET_CLIENT_TIMEOUT_MS", 8000)
    AVAILABILITY_TIMEOUT_MS = _env_int("AVAILABILITY_TIMEOUT_MS", 10000)
    CREATE_EVENT_TIMEOUT_MS = _env_int("CREATE_EVENT_TIMEOUT_MS", 15000)
    BODY_READ_TIMEOUT_MS = _env_int("BODY_READ_TIMEOUT_MS", 5000)

    # None keeps the cached client until process restart
    AUTH_CLIENT_TTL_SECONDS = _env_int("AUTH_CLIENT_TTL_SECONDS", 0) or None

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_MS = _env_int("RATE_LIMIT_WINDOW_MS", 60000)
    RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 50)
    RATE_LIMIT_STORE_TIMEOUT_MS = _env_int("RATE_LIMIT_STORE_TIMEOUT_MS", 500)
    RATE_LIMIT_FAIL_OPEN = _env_bool("RATE_LIMIT_FAIL_OPEN", True)
    REDIS_URL = os.getenv("REDIS_URL")
    # Peers whose X-Forwarded-For header is believed; empty means key on the socket peer only
    RATE_LIMIT_TRUSTED_PROXIES = frozenset(
        proxy.strip() for proxy in os.getenv("RATE_LIMIT_TRUSTED_PROXIES", "").split(",") if proxy.strip()
    )

    CORS_ORIGINS = [
        origin.strip() for origin in os.getenv("CORS_ORIGIN", "*").split(",") if origin.strip()
    ] or ["*"]

    @classmethod
    def validate(cls):
        missing = []
        if not cls.GOOGLE_CALENDAR_ID:
            missing.append("GOOGLE_CALENDAR_ID")
        if not os.path.exists(cls.SERVICE_ACCOUNT_FILE):
            missing.append(f"SERVICE_ACCOUNT_FILE at {cls.SERVICE_ACCOUNT_FILE}")

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        return True
