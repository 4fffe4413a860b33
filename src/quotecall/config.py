"""Startup configuration.

Checks that all required environment variables are set before the server
accepts webhooks, and collects the tunables read elsewhere into a single
Settings object.  A missing key causes a clear startup failure rather than
a silent mid-call crash.
"""

import os
import sys
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
]

OPTIONAL_VARS = [
    "REDIS_URL",
    "VOIP_WEBHOOK_SECRET",
    "CATALOG_BASE_URL",
    "CATALOG_API_KEY",
    "NOTIFY_WEBHOOK_URL",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or the deployment secrets (production).\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Env var %s=%r is not a number, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    openai_api_key: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    extraction_model: str = "gpt-4o-mini"
    turn_timeout_s: float = 8.0
    extraction_timeout_s: float = 30.0
    extraction_max_retries: int = 2

    redis_url: str = ""
    state_ttl_s: int = 3600
    lock_ttl_ms: int = 15000
    lock_wait_s: float = 2.0

    webhook_secret: str = ""
    allow_placeholder_token: bool = True
    placeholder_token: str = "no-api-key"

    catalog_base_url: str = ""
    catalog_api_key: str = ""
    notify_webhook_url: str = ""

    negotiation_threshold: float = 0.20
    max_negotiation_attempts: int = 2

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            extraction_model=os.getenv("EXTRACTION_MODEL") or os.getenv("LLM_MODEL", "gpt-4o-mini"),
            turn_timeout_s=_env_float("LLM_TURN_TIMEOUT_S", 8.0),
            extraction_timeout_s=_env_float("LLM_EXTRACTION_TIMEOUT_S", 30.0),
            extraction_max_retries=_env_int("EXTRACTION_MAX_RETRIES", 2),
            redis_url=os.getenv("REDIS_URL", ""),
            state_ttl_s=_env_int("CALL_STATE_TTL_S", 3600),
            lock_ttl_ms=_env_int("CALL_LOCK_TTL_MS", 15000),
            lock_wait_s=_env_float("CALL_LOCK_WAIT_S", 2.0),
            webhook_secret=os.getenv("VOIP_WEBHOOK_SECRET", ""),
            allow_placeholder_token=_env_bool("VOIP_ALLOW_PLACEHOLDER_TOKEN", True),
            placeholder_token=os.getenv("VOIP_PLACEHOLDER_TOKEN", "no-api-key"),
            catalog_base_url=os.getenv("CATALOG_BASE_URL", ""),
            catalog_api_key=os.getenv("CATALOG_API_KEY", ""),
            notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL", ""),
            negotiation_threshold=_env_float("NEGOTIATION_THRESHOLD", 0.20),
            max_negotiation_attempts=_env_int("MAX_NEGOTIATION_ATTEMPTS", 2),
        )
