"""
Backend Registry - the single owner of every Backend instance.

Built once at startup and read-only afterwards. Models only hold weak
references to their Backend, so once the registry is torn down with
aclose() any model still held by a caller reports BackendDisposedError.

Usage:
    # At startup (cli.py)
    set_registry(build_registry(load_ollama_settings()))

    # In tools
    backend = get_registry().get("Ollama")
    await backend.refresh_models()

    # At teardown
    await get_registry().aclose()
    clear_registry()
"""

import logging
from types import MappingProxyType
from typing import Iterator, Optional

from llmhost.backends.base import Backend
from llmhost.backends.ollama import OllamaBackend
from llmhost.config import OllamaSettings, load_ollama_settings
from llmhost.errors import BackendNotFoundError

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Read-only mapping of backend name to Backend."""

    def __init__(self, backends: list[Backend]):
        by_name: dict[str, Backend] = {}
        for backend in backends:
            if backend.name in by_name:
                raise ValueError(f"Duplicate backend name: {backend.name}")
            by_name[backend.name] = backend
        self._backends = MappingProxyType(by_name)

    def get(self, name: str) -> Backend:
        """
        Raises:
            BackendNotFoundError: If no backend has that name
        """
        try:
            return self._backends[name]
        except KeyError:
            raise BackendNotFoundError(name) from None

    def names(self) -> list[str]:
        return list(self._backends)

    def __iter__(self) -> Iterator[Backend]:
        return iter(self._backends.values())

    def __len__(self) -> int:
        return len(self._backends)

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    async def aclose(self) -> None:
        """
        Shut down and release every backend, then drop the references.

        Failures of individual backends are logged so the remaining ones are
        still torn down.
        """
        for backend in self._backends.values():
            try:
                await backend.shutdown()
            except Exception as e:
                logger.error(f"Failed to shut down {backend.name}: {e}")
            try:
                await backend.aclose()
            except Exception as e:
                logger.error(f"Failed to close {backend.name}: {e}")
        self._backends = MappingProxyType({})


def build_registry(settings: Optional[OllamaSettings] = None) -> BackendRegistry:
    """Create every built-in backend. Backends start STOPPED; nothing is booted here."""
    return BackendRegistry([OllamaBackend(settings or load_ollama_settings())])


# ─────────────────────────────────────────────────────────────────────
# PROCESS-WIDE INSTANCE
# ─────────────────────────────────────────────────────────────────────

_registry: Optional[BackendRegistry] = None


def set_registry(registry: BackendRegistry) -> None:
    global _registry
    _registry = registry


def get_registry() -> BackendRegistry:
    """
    Get the process-wide registry.

    Raises:
        RuntimeError: If no registry has been set
    """
    if _registry is None:
        raise RuntimeError("No backend registry set. Call set_registry() at startup.")
    return _registry


def clear_registry() -> None:
    """
    Forget the process-wide registry.

    Primarily useful for testing to reset state between tests.
    """
    global _registry
    _registry = None
