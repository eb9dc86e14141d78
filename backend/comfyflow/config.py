"""
Runtime configuration read from the environment (and a local .env file).

Every value has a default so a local ComfyUI on the standard port works
without any configuration.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://127.0.0.1:8188"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if parsed <= 0:
        return default
    return parsed


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if parsed < 0:
        return default
    return parsed


class Settings(BaseModel):
    engine_host: str = DEFAULT_HOST
    request_timeout: float = 60.0
    max_retries: int = 2

    poll_interval: float = 1.5
    stall_grace: float = 1.0
    stall_poll_timeout: float = 10.0
    execution_timeout: float = 300.0

    graph_ttl: float = 30 * 60
    cleanup_wait: float = 1.0
    batch_concurrency: int = 2


def get_settings() -> Settings:
    """Build settings from the current environment."""
    host = (os.getenv("COMFYUI_HOST") or DEFAULT_HOST).strip().rstrip("/")
    return Settings(
        engine_host=host,
        request_timeout=_env_float("COMFYUI_REQUEST_TIMEOUT", 60.0),
        max_retries=_env_int("COMFYUI_MAX_RETRIES", 2),
        poll_interval=_env_float("COMFYFLOW_POLL_INTERVAL", 1.5),
        stall_grace=_env_float("COMFYFLOW_STALL_GRACE", 1.0),
        stall_poll_timeout=_env_float("COMFYFLOW_STALL_POLL_TIMEOUT", 10.0),
        execution_timeout=_env_float("COMFYFLOW_EXECUTION_TIMEOUT", 300.0),
        graph_ttl=_env_float("COMFYFLOW_GRAPH_TTL", 30 * 60),
        cleanup_wait=_env_float("COMFYFLOW_CLEANUP_WAIT", 1.0),
        batch_concurrency=max(1, _env_int("COMFYFLOW_BATCH_CONCURRENCY", 2)),
    )
