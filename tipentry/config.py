"""
Runtime configuration for the tip entry assistant.

Values come from the environment (optionally a .env file). They are read on
each call rather than cached at import time so tests can monkeypatch the
environment.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv(override=False)

DEFAULT_TEXT_MODEL = "models/gemini-2.5-flash"
DEFAULT_VISION_MODEL = "models/gemini-2.5-flash"
FALLBACK_MODELS = [
    "models/gemini-2.5-flash",
    "models/gemini-2.0-flash",
    "models/gemini-2.5-pro",
]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def google_api_key() -> Optional[str]:
    """Return the model credential, or None when running without one."""
    key = os.getenv("GOOGLE_API_KEY", "").strip()
    return key or None


def text_model_name() -> str:
    return os.getenv("TEXT_MODEL", DEFAULT_TEXT_MODEL)


def vision_model_name() -> str:
    return os.getenv("VISION_MODEL", DEFAULT_VISION_MODEL)


def llm_max_retries() -> int:
    return _env_int("LLM_MAX_RETRIES", 2)


def llm_timeout_seconds() -> float:
    return _env_float("LLM_TIMEOUT_SECONDS", 20.0)


def ai_rate_limit() -> int:
    # 20 requests per hour per user
    return _env_int("AI_RATE_LIMIT", 20)


def ai_rate_window_seconds() -> float:
    return _env_float("AI_RATE_WINDOW_SECONDS", 3600.0)


def spam_window_seconds() -> float:
    return _env_float("SPAM_WINDOW_SECONDS", 60.0)


def spam_duplicate_threshold() -> int:
    return _env_int("SPAM_DUPLICATE_THRESHOLD", 1)


def max_input_chars() -> int:
    return _env_int("MAX_INPUT_CHARS", 500)


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
