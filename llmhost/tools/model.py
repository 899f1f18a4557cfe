"""Tools: per-model runtime state and load/unload."""

from llmhost.backends.base import Model, RuntimeSnapshot
from llmhost.errors import InternalError
from llmhost.registry import get_registry


def get_model(backend: str, model: str) -> Model:
    """
    Resolve a model by backend and model name.

    Raises:
        BackendNotFoundError: Unknown backend
        ModelNotFoundError: Unknown model (refresh_models may be needed first)
    """
    return get_registry().get(backend).get_model(model)


async def is_model_loaded(backend: str, model: str) -> bool:
    return await get_model(backend, model).is_loaded()


async def get_model_loaded_size(backend: str, model: str) -> int:
    """VRAM bytes used by the model, -1 when it is not loaded."""
    return await get_model(backend, model).loaded_size()


async def get_model_runtime_info(backend: str, model: str) -> RuntimeSnapshot:
    """
    Raises:
        InternalError: If the model is not loaded
    """
    info = await get_model(backend, model).runtime_info()
    if info is None:
        raise InternalError("Model is not running")
    return info


async def load_model(backend: str, model: str) -> None:
    await get_model(backend, model).load()


async def unload_model(backend: str, model: str) -> None:
    await get_model(backend, model).unload()
