import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Config:
    # Server
    HOST = os.getenv("WEBHOOK_DELAY_HOST", "127.0.0.1")
    PORT = _env_int("WEBHOOK_DELAY_PORT", 8787)

    # Shared secret checked against x-webhook-secret or ?secret=
    SECRET = os.getenv("WEBHOOK_DELAY_SECRET", "") or os.getenv("WEBHOOK_SECRET", "")
    PROTECT_STATUS = os.getenv("WEBHOOK_DELAY_PROTECT_STATUS", "0") in ("1", "true", "True")

    # Static target (mode B). When empty, callers supply x-webhook-url per request.
    TARGET_URL = os.getenv("WEBHOOK_DELAY_TARGET_URL", "").strip()
    DELAY_SECONDS = _env_int("WEBHOOK_DELAY_SECONDS", 60)

    # Trigger call
    METHOD = os.getenv("WEBHOOK_DELAY_METHOD", "POST").strip().upper()  # POST | GET
    TIMEOUT_SEC = _env_float("WEBHOOK_DELAY_TIMEOUT_SEC", 30.0)

    DB_PATH = os.getenv("WEBHOOK_DELAY_DB_PATH", "") or str(Path(__file__).resolve().parents[1] / "scheduler.db")

    DEFAULT_SCHEDULER_KEY = "scheduler"
    SUPPORTED_METHODS = ("POST", "GET")

    @classmethod
    def trigger_method(cls) -> str:
        method = (cls.METHOD or "POST").strip().upper()
        return method if method in cls.SUPPORTED_METHODS else "POST"

    @classmethod
    def static_target(cls) -> str:
        return (cls.TARGET_URL or "").strip()
