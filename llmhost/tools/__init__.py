"""Caller-facing operations.

Each tool is a self-contained async function addressing backends and models
by name through the registry.
"""

from llmhost.tools.backend import (
    boot_backend,
    get_backend_state,
    is_backend_running,
    list_models,
    list_running_models,
    refresh_models,
    shutdown_backend,
)
from llmhost.tools.model import (
    get_model,
    get_model_loaded_size,
    get_model_runtime_info,
    is_model_loaded,
    load_model,
    unload_model,
)
from llmhost.tools.ollama import (
    get_ollama_api_url,
    get_ollama_models_path,
    pull_ollama_model,
    set_ollama_api_url,
    set_ollama_models_path,
)
from llmhost.tools.prompt import (
    abort_all_prompts,
    active_prompts,
    collect_response,
    prompt_model,
    stop_prompt,
    wait_prompt,
)

__all__ = [
    "abort_all_prompts",
    "active_prompts",
    "boot_backend",
    "collect_response",
    "get_backend_state",
    "get_model",
    "get_model_loaded_size",
    "get_model_runtime_info",
    "get_ollama_api_url",
    "get_ollama_models_path",
    "is_backend_running",
    "is_model_loaded",
    "list_models",
    "list_running_models",
    "load_model",
    "prompt_model",
    "pull_ollama_model",
    "refresh_models",
    "set_ollama_api_url",
    "set_ollama_models_path",
    "shutdown_backend",
    "stop_prompt",
    "unload_model",
    "wait_prompt",
]
