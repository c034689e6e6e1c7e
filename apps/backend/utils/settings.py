# apps/backend/utils/settings.py

from __future__ import annotations

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _list_env(name: str) -> List[str]:
    raw = os.getenv(name, "") or ""
    return [x.strip() for x in raw.split(",") if x.strip()]


class Settings:
    """
    Runtime configuration, read once from the environment.

    Platform knobs:
    - PLATFORM_API_VERSION pins the Shopify Admin REST version
    - PLATFORM_TIMEOUT_SECONDS bounds every outbound platform call
    - COMMANDS_MAX_WORKERS bounds per-resource fan-out inside one action
    """

    def __init__(self) -> None:
        self.APP_VERSION = os.getenv("APP_VERSION", "0.1.0")

        self.SUPABASE_URL = os.getenv("SUPABASE_URL")
        self.SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

        self.PLATFORM_API_VERSION = os.getenv("PLATFORM_API_VERSION", "2024-01")
        self.PLATFORM_TIMEOUT_SECONDS = _float_env("PLATFORM_TIMEOUT_SECONDS", 20.0)

        self.COMMANDS_MAX_WORKERS = max(1, _int_env("COMMANDS_MAX_WORKERS", 4))
        self.PRODUCT_FETCH_LIMIT = _int_env("PRODUCT_FETCH_LIMIT", 250)
        self.TARGET_ID_CAP = _int_env("TARGET_ID_CAP", 50)
        self.PREVIEW_SAMPLE_SIZE = _int_env("PREVIEW_SAMPLE_SIZE", 5)

        self.CORS_MODE = os.getenv("CORS_MODE", "off")
        self.CORS_ALLOW_ORIGINS = _list_env("CORS_ALLOW_ORIGINS")


settings = Settings()
