import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, str(default))
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, str(default))
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def load_config(overrides: Optional[Dict] = None) -> Dict:
    """Collect settings from the environment (and a local .env file).

    ``overrides`` wins over anything read from the environment, which is how
    the test-suite and embedding applications tweak single keys.
    """
    cors_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]

    config = {
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(
            hours=_env_int("ACCESS_TOKEN_EXPIRY_HOURS", 1)
        ),
        "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/ecommerce"),
        "MONGO_TRANSACTIONS": _env_flag("MONGO_TRANSACTIONS", True),
        "CURRENCY": (os.getenv("CURRENCY", "USD") or "USD").strip().upper(),
        "PAYMENT_PROVIDER": (os.getenv("PAYMENT_PROVIDER", "fake") or "fake")
        .strip()
        .lower(),
        "PAYMENT_GATEWAY_URL": (os.getenv("PAYMENT_GATEWAY_URL") or "").strip(),
        "PAYMENT_GATEWAY_API_KEY": (os.getenv("PAYMENT_GATEWAY_API_KEY") or "").strip(),
        "PAYMENT_TIMEOUT_SECONDS": _env_float("PAYMENT_TIMEOUT_SECONDS", 30.0),
        "PASSWORD_RESET_EXPIRY_MINUTES": max(1, _env_int("PASSWORD_RESET_EXPIRY_MINUTES", 10)),
        "DEFAULT_ADMIN_EMAIL": (os.getenv("DEFAULT_ADMIN_EMAIL") or "").strip().lower(),
        "CORS_ALLOWED_ORIGINS": cors_origins,
        "TRUSTED_PROXY_HOPS": max(0, _env_int("TRUSTED_PROXY_HOPS", 1)),
        "LOG_LEVEL": (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper(),
    }
    if overrides:
        config.update(overrides)
    return config
