"""
Environment-driven settings.

Values are read when the module is imported; ``sparkset.main`` loads the
``.env`` file first.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger("settings")

AI_GENERATION_TEMPERATURE = 0.1
AI_DEFAULT_MODEL = os.getenv("AI_DEFAULT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
AI_DEFAULT_PROVIDER = os.getenv("AI_DEFAULT_PROVIDER", "openai").strip() or "openai"
# 0 disables the per-attempt deadline.
AI_ATTEMPT_TIMEOUT_S = max(0.0, float(os.getenv("AI_ATTEMPT_TIMEOUT_S", "60")))
AI_PROBE_TIMEOUT_S = max(0.5, float(os.getenv("AI_PROBE_TIMEOUT_S", "5")))

QUERY_REQUEST_LIMIT_MAX = 1000
QUERY_REQUEST_QUESTION_MAX_LENGTH = 2000

DATASOURCE_QUERY_TIMEOUT_S = max(1, int(os.getenv("DATASOURCE_QUERY_TIMEOUT_S", "30")))
DATASOURCE_CONNECT_TIMEOUT_S = max(1, int(os.getenv("DATASOURCE_CONNECT_TIMEOUT_S", "10")))

PROVIDER_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
    "moonshot": "MOONSHOT_API_KEY",
    "zhipu": "ZHIPU_API_KEY",
    "qwen": "DASHSCOPE_API_KEY",
}


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None
    return value if value > 0 else None


def _json_list(name: str) -> List[Dict[str, Any]]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed %s: %s", name, exc)
        return []
    if not isinstance(parsed, list):
        logger.warning("Ignoring %s: expected a JSON list", name)
        return []
    return [item for item in parsed if isinstance(item, dict)]


QUERY_DEFAULT_LIMIT = _optional_int("QUERY_DEFAULT_LIMIT")


def api_token() -> str:
    return os.getenv("SPARKSET_API_TOKEN", "").strip()


def fallback_models() -> List[Dict[str, Any]]:
    return _json_list("AI_FALLBACK_MODELS")


def ai_providers() -> List[Dict[str, Any]]:
    return _json_list("AI_PROVIDERS")


def datasources() -> List[Dict[str, Any]]:
    return _json_list("DATASOURCES")


def provider_api_key(provider: str) -> Optional[str]:
    env_name = PROVIDER_API_KEY_ENV.get((provider or "").strip().lower())
    if not env_name:
        return None
    return os.getenv(env_name, "").strip() or None
