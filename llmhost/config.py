"""
Configuration constants and settings models for llmhost.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Overridable via environment / .env
# ─────────────────────────────────────────────────────────────────────

DEFAULT_OLLAMA_URL: str = "http://localhost:11434/api/"
DEFAULT_OLLAMA_EXECUTABLE: str = "ollama"
DEFAULT_KEEP_ALIVE: str = "10m"


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS
# ─────────────────────────────────────────────────────────────────────

HEALTH_TIMEOUT_SECONDS: float = 2.0
REQUEST_TIMEOUT_SECONDS: float = 30.0
CONNECT_TIMEOUT_SECONDS: float = 10.0

BOOT_ATTEMPTS: int = 3
BOOT_RETRY_DELAY_SECONDS: float = 2.0

# Chunk reader -> decoder, decoder -> caller
CHUNK_QUEUE_SIZE: int = 1024
EVENT_QUEUE_SIZE: int = 256

# Environment variable the Ollama server reads its model directory from
OLLAMA_MODELS_ENV: str = "OLLAMA_MODELS"


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def get_ollama_url() -> str:
    """
    Get the Ollama API base URL.

    Set LLMHOST_OLLAMA_URL in .env (default: http://localhost:11434/api/).
    """
    value = os.environ.get("LLMHOST_OLLAMA_URL", "").strip()
    return value or DEFAULT_OLLAMA_URL


def get_ollama_models_path() -> Optional[Path]:
    """
    Get the model storage directory override for a locally started Ollama.

    Set LLMHOST_OLLAMA_MODELS_PATH in .env. Unset means Ollama's own default.
    """
    value = os.environ.get("LLMHOST_OLLAMA_MODELS_PATH", "").strip()
    return Path(value).expanduser() if value else None


def get_ollama_executable() -> str:
    """Get the Ollama executable name or path (LLMHOST_OLLAMA_EXECUTABLE)."""
    value = os.environ.get("LLMHOST_OLLAMA_EXECUTABLE", "").strip()
    return value or DEFAULT_OLLAMA_EXECUTABLE


def get_keep_alive() -> str:
    """Get how long Ollama keeps a prompted model loaded (LLMHOST_KEEP_ALIVE)."""
    value = os.environ.get("LLMHOST_KEEP_ALIVE", "").strip()
    return value or DEFAULT_KEEP_ALIVE


def get_boot_attempts() -> int:
    """
    Get the number of health checks made after launching a backend.

    Set LLMHOST_BOOT_ATTEMPTS in .env (default: 3).
    """
    try:
        attempts = int(os.environ.get("LLMHOST_BOOT_ATTEMPTS", str(BOOT_ATTEMPTS)))
    except ValueError:
        return BOOT_ATTEMPTS
    return attempts if attempts > 0 else BOOT_ATTEMPTS


def get_boot_retry_delay() -> float:
    """
    Get the delay between boot health checks in seconds.

    Set LLMHOST_BOOT_RETRY_DELAY in .env (default: 2).
    """
    try:
        delay = float(os.environ.get("LLMHOST_BOOT_RETRY_DELAY", str(BOOT_RETRY_DELAY_SECONDS)))
    except ValueError:
        return BOOT_RETRY_DELAY_SECONDS
    return delay if delay >= 0 else BOOT_RETRY_DELAY_SECONDS


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class OllamaSettings(BaseModel):
    """Resolved settings for the Ollama backend."""
    api_url: str = DEFAULT_OLLAMA_URL
    models_path: Optional[Path] = None
    executable: str = DEFAULT_OLLAMA_EXECUTABLE
    keep_alive: str = DEFAULT_KEEP_ALIVE
    boot_attempts: int = BOOT_ATTEMPTS
    boot_retry_delay: float = BOOT_RETRY_DELAY_SECONDS


def load_ollama_settings() -> OllamaSettings:
    """Build OllamaSettings from environment variables."""
    return OllamaSettings(
        api_url=get_ollama_url(),
        models_path=get_ollama_models_path(),
        executable=get_ollama_executable(),
        keep_alive=get_keep_alive(),
        boot_attempts=get_boot_attempts(),
        boot_retry_delay=get_boot_retry_delay(),
    )
