"""
Configuration constants and environment getters for local-runtime.
"""

import os
from pathlib import Path
from typing import Optional


# ─────────────────────────────────────────────────────────────────────
# SERVER
# ─────────────────────────────────────────────────────────────────────

DEFAULT_BASE_URL: str = "http://localhost:11434"
SERVER_EXECUTABLE_NAME: str = "ollama"

HEALTH_PROBE_TIMEOUT_SECONDS: float = 3.0
STARTUP_POLL_INTERVAL_SECONDS: float = 0.5
STARTUP_TIMEOUT_SECONDS: float = 10.0
STOP_GRACE_SECONDS: float = 3.0
RESTART_SETTLE_SECONDS: float = 1.5

# Environment handed to the server process. GPU offload is on unless the
# caller already chose a layer count.
SERVER_ENV_DEFAULTS: dict[str, str] = {
    "OLLAMA_NUM_PARALLEL": "1",
    "OLLAMA_MAX_LOADED_MODELS": "1",
}
GPU_LAYERS_ENV: str = "OLLAMA_NUM_GPU"
GPU_LAYERS_ALL: str = "999"


# ─────────────────────────────────────────────────────────────────────
# CATALOG / PULL
# ─────────────────────────────────────────────────────────────────────

CATALOG_TIMEOUT_SECONDS: float = 120.0
DEFAULT_PULL_RETRIES: int = 3
PULL_STALL_TIMEOUT_SECONDS: float = 120.0
PULL_BACKOFF_BASE_SECONDS: float = 2.0
PULL_BACKOFF_MAX_SECONDS: float = 8.0


# ─────────────────────────────────────────────────────────────────────
# COMPLETION
# ─────────────────────────────────────────────────────────────────────

CHAT_TIMEOUT_SECONDS: float = 60.0
VISION_TIMEOUT_SECONDS: float = 300.0  # 5 minutes, vision inference is slow

# Model families known to emit concatenated JSON objects without newlines.
DEFAULT_AGGRESSIVE_FAMILIES: tuple[str, ...] = ("qwen",)


# ─────────────────────────────────────────────────────────────────────
# CONTEXT COMPOSITION
# ─────────────────────────────────────────────────────────────────────

PAGE_CONTENT_LIMIT: int = 5000
CONTEXT_ITEMS_LIMIT: int = 10
TRUNCATION_MARKER: str = "..."


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def get_base_url() -> str:
    """
    Get the server base URL from environment or default.

    Set LOCAL_RUNTIME_URL in .env (default: http://localhost:11434).
    """
    value = os.environ.get("LOCAL_RUNTIME_URL", "").strip()
    return value.rstrip("/") if value else DEFAULT_BASE_URL


def get_resources_dir() -> Path:
    """
    Get the directory holding bundled server binaries.

    Set LOCAL_RUNTIME_RESOURCES in .env. Defaults to ./resources under
    the project root, mirroring the development layout.
    """
    value = os.environ.get("LOCAL_RUNTIME_RESOURCES")
    if value:
        return Path(value).expanduser()
    return Path(__file__).resolve().parent.parent / "resources"


def get_executable_override() -> Optional[Path]:
    """Explicit server executable path (LOCAL_RUNTIME_EXECUTABLE), if set."""
    value = os.environ.get("LOCAL_RUNTIME_EXECUTABLE")
    return Path(value).expanduser() if value else None


def get_pull_retries() -> int:
    """
    Get max retry attempts for model pulls.

    Set LOCAL_RUNTIME_PULL_RETRIES in .env (default: 3).
    """
    try:
        return int(os.environ.get("LOCAL_RUNTIME_PULL_RETRIES", str(DEFAULT_PULL_RETRIES)))
    except ValueError:
        return DEFAULT_PULL_RETRIES


def get_stall_timeout() -> float:
    """
    Get the pull stall watchdog window in seconds.

    Set LOCAL_RUNTIME_STALL_TIMEOUT in .env (default: 120).
    """
    try:
        return float(os.environ.get("LOCAL_RUNTIME_STALL_TIMEOUT", str(PULL_STALL_TIMEOUT_SECONDS)))
    except ValueError:
        return PULL_STALL_TIMEOUT_SECONDS


def get_aggressive_families() -> tuple[str, ...]:
    """
    Get model-name fragments that select the aggressive stream decoder.

    Set LOCAL_RUNTIME_AGGRESSIVE_FAMILIES to a comma-separated list
    (default: qwen).
    """
    value = os.environ.get("LOCAL_RUNTIME_AGGRESSIVE_FAMILIES")
    if value is None:
        return DEFAULT_AGGRESSIVE_FAMILIES
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())
