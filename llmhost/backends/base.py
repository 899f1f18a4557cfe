"""
Backend / Model contract - defines what every LLM service integration provides.

This is the WHAT (interface), not the HOW (implementation).
See ollama.py for the concrete implementation.

Ownership rules:
- A Backend exclusively owns its Models; refresh replaces the list wholesale.
- A Model only holds a weak reference back to its Backend. Resolving it after
  the Backend was disposed raises BackendDisposedError instead of crashing.
- The registry holds the only strong reference to each Backend.

Locking:
- Each Backend has one reader/writer lock. Discovery reads, health checks and
  prompt issuance take the reader side; refresh, boot and shutdown the writer side.
- Each Model guards its runtime-info cache with its own lock, independent of
  the Backend lock.
"""

import asyncio
import logging
import re
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import aiorwlock
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from llmhost.chat import ChatMessage
from llmhost.errors import BackendDisposedError, ModelNotFoundError
from llmhost.streaming import CompletionSession

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# VALUE TYPES
# ─────────────────────────────────────────────────────────────────────

class Capability(str, Enum):
    """What a model can be used for."""
    COMPLETION = "completion"
    VISION = "vision"
    TOOLS = "tools"
    THINKING = "thinking"


class BackendState(str, Enum):
    """Lifecycle of a backend service: STOPPED -> BOOTING -> RUNNING -> STOPPED."""
    STOPPED = "stopped"
    BOOTING = "booting"
    RUNNING = "running"


class ModelDescriptor(BaseModel):
    """Static description of one model, as reported by discovery."""
    model_config = ConfigDict(frozen=True)

    name: str
    id: str
    size: int  # bytes
    capabilities: frozenset[Capability] = frozenset()


# Wire timestamps may carry nanoseconds and a trailing Z
_FRACTION = re.compile(r"\.(\d+)")


def parse_wire_datetime(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuntimeSnapshot(BaseModel):
    """A loaded model's memory footprint and the time its entry goes stale."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    model_name: str = Field(validation_alias=AliasChoices("model_name", "name"))
    vram_bytes: int = Field(validation_alias=AliasChoices("vram_bytes", "size_vram"))
    expires_at: datetime

    @field_validator("expires_at", mode="before")
    @classmethod
    def _parse_expires_at(cls, value):
        if isinstance(value, str):
            return parse_wire_datetime(value)
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


# ─────────────────────────────────────────────────────────────────────
# BACKEND
# ─────────────────────────────────────────────────────────────────────

class Backend(ABC):
    """
    Contract for a locally running LLM service hosting multiple models.

    Implementations must provide discovery (refresh_models, running_models),
    health (is_running) and lifecycle (boot, shutdown).
    """

    def __init__(self):
        self._lock = aiorwlock.RWLock()
        self._models: list["Model"] = []
        self._state = BackendState.STOPPED

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable unique identifier, used as the registry key."""
        ...

    @property
    def state(self) -> BackendState:
        return self._state

    def list_models(self) -> list["Model"]:
        """
        Return the current model set.

        Stale until refresh_models() is called. Model identity does not
        survive a refresh.
        """
        return list(self._models)

    def get_model(self, name: str) -> "Model":
        """
        Look up a model by name in the current list.

        Raises:
            ModelNotFoundError: If no model has that name
        """
        for model in self._models:
            if model.name == name:
                return model
        raise ModelNotFoundError(name, self.name)

    @abstractmethod
    async def refresh_models(self) -> None:
        """
        Query the service catalog and atomically replace the model list.

        On failure the previous list is left untouched.
        """
        ...

    @abstractmethod
    async def running_models(self) -> list[RuntimeSnapshot]:
        """Return every currently loaded model with its VRAM footprint and expiry."""
        ...

    @abstractmethod
    async def is_running(self) -> bool:
        """Liveness probe with a short timeout. Never raises."""
        ...

    @abstractmethod
    async def boot(self) -> None:
        """Start the service if it is not already running. Idempotent."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Clear the model list and stop the service if this process started it. Idempotent."""
        ...

    async def aclose(self) -> None:
        """Release client resources. Called once during explicit teardown."""
        return None


# ─────────────────────────────────────────────────────────────────────
# MODEL
# ─────────────────────────────────────────────────────────────────────

class Model(ABC):
    """
    Contract for one addressable model within a Backend.

    Holds the static descriptor, a weak reference to the owning Backend and
    a cached RuntimeSnapshot with TTL semantics.
    """

    def __init__(self, descriptor: ModelDescriptor, backend: Backend):
        self._descriptor = descriptor
        self._backend_ref = weakref.ref(backend)
        self._runtime: Optional[RuntimeSnapshot] = None
        self._runtime_lock = asyncio.Lock()
        # generation counts stored fetches, epoch counts invalidations
        self._runtime_generation = 0
        self._runtime_epoch = 0

    @property
    def descriptor(self) -> ModelDescriptor:
        return self._descriptor

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def backend(self) -> Optional[Backend]:
        """The owning Backend, or None if it has been disposed."""
        return self._backend_ref()

    def access_backend(self) -> Backend:
        """
        Get a strong reference to the owning Backend.

        Raises:
            BackendDisposedError: If the Backend no longer exists
        """
        backend = self._backend_ref()
        if backend is None:
            raise BackendDisposedError(f"Backend of model '{self.name}' is already disposed")
        return backend

    async def runtime_info(self) -> Optional[RuntimeSnapshot]:
        """
        Return the cached RuntimeSnapshot, fetching a fresh one once it expired.

        Concurrent callers racing the same cache miss share a single fetch:
        whoever waited on the lock while another caller fetched reuses that
        result, unless the cache was invalidated in the meantime. A fetch that
        was overtaken by an invalidation is returned to its own caller but
        never stored. Fetch failures propagate.
        """
        cached = self._runtime
        if cached is not None and not cached.is_expired():
            return cached

        generation, epoch = self._runtime_generation, self._runtime_epoch
        async with self._runtime_lock:
            if self._runtime_generation != generation and self._runtime_epoch == epoch:
                return self._runtime

            cached = self._runtime
            if cached is not None and not cached.is_expired():
                return cached

            fetch_epoch = self._runtime_epoch
            snapshots = await self._fetch_running_models()
            snapshot = next((s for s in snapshots if s.model_name == self.name), None)
            if self._runtime_epoch == fetch_epoch:
                self._runtime = snapshot
                self._runtime_generation += 1
            return snapshot

    def invalidate_runtime_info(self) -> None:
        """Drop the cached snapshot so the next read fetches, even one already queued."""
        self._runtime = None
        self._runtime_epoch += 1

    async def is_loaded(self) -> bool:
        return await self.runtime_info() is not None

    async def loaded_size(self) -> int:
        """VRAM used by the loaded model in bytes, or -1 if not loaded."""
        info = await self.runtime_info()
        return info.vram_bytes if info is not None else -1

    async def _fetch_running_models(self) -> list[RuntimeSnapshot]:
        backend = self.access_backend()
        return await backend.running_models()

    @abstractmethod
    async def load(self) -> None:
        """Load the model. May be a no-op for services that load on use."""
        ...

    @abstractmethod
    async def unload(self) -> None:
        """Unload the model. May be a no-op for services that load on use."""
        ...

    @abstractmethod
    async def prompt(
        self,
        message: ChatMessage,
        history: list[ChatMessage],
        think: Optional[bool] = None,
    ) -> CompletionSession:
        """
        Start a streaming chat completion over history + [message].

        Returns once the request has been accepted; does not wait for the
        stream to finish.
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
