"""Tools: Ollama-only configuration and model downloads.

Every tool checks that the named backend really is Ollama and raises
InternalError("Backend is not Ollama") otherwise.
"""

from pathlib import Path
from typing import Optional, Union

from llmhost.backends.ollama import OllamaBackend, not_ollama
from llmhost.registry import get_registry
from llmhost.tools.prompt import EventSink, track_session


def as_ollama(backend: str) -> OllamaBackend:
    instance = get_registry().get(backend)
    if not isinstance(instance, OllamaBackend):
        raise not_ollama()
    return instance


def get_ollama_api_url(backend: str) -> str:
    return str(as_ollama(backend).api_url)


async def set_ollama_api_url(backend: str, url: str) -> None:
    await as_ollama(backend).set_api_url(url)


def get_ollama_models_path(backend: str) -> Optional[Path]:
    return as_ollama(backend).models_path


async def set_ollama_models_path(backend: str, path: Union[str, Path]) -> None:
    """Change the models directory; restarts the service."""
    await as_ollama(backend).set_models_path(path)


async def pull_ollama_model(backend: str, tag: str, sink: EventSink) -> int:
    """
    Start downloading a model; PullProgress events go to `sink`.

    Returns a handle accepted by stop_prompt().
    """
    session = await as_ollama(backend).pull_model(tag)
    return track_session(session, sink)
