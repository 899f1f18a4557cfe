"""Tools: backend lifecycle and discovery.

Each tool resolves the backend by name through the registry, so callers never
hold Backend references themselves.

Usage:
    await boot_backend("Ollama")
    await refresh_models("Ollama")
    for descriptor in await list_models("Ollama"):
        print(descriptor.name)
"""

from llmhost.backends.base import BackendState, ModelDescriptor, RuntimeSnapshot
from llmhost.registry import get_registry


async def is_backend_running(backend: str) -> bool:
    return await get_registry().get(backend).is_running()


def get_backend_state(backend: str) -> BackendState:
    return get_registry().get(backend).state


async def boot_backend(backend: str) -> None:
    await get_registry().get(backend).boot()


async def shutdown_backend(backend: str) -> None:
    await get_registry().get(backend).shutdown()


async def refresh_models(backend: str) -> list[ModelDescriptor]:
    """Re-query the service catalog and return the new model list."""
    instance = get_registry().get(backend)
    await instance.refresh_models()
    return [m.descriptor for m in instance.list_models()]


async def list_models(backend: str) -> list[ModelDescriptor]:
    """
    Current model list as of the last refresh.

    Does not contact the service.
    """
    return [m.descriptor for m in get_registry().get(backend).list_models()]


async def list_running_models(backend: str) -> list[RuntimeSnapshot]:
    return await get_registry().get(backend).running_models()
