"""
OllamaBackend - Ollama implementation of the Backend/Model contract.

Talks to the Ollama REST API (default http://localhost:11434/api/) and can
start/stop a local `ollama serve` process when the service is not already
running. A process is only terminated on shutdown if this backend started it.
"""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Any, Optional, TypeVar, Union

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from tenacity import before_sleep_log, retry, retry_if_result, stop_after_attempt, wait_fixed

from llmhost.backends.base import (
    Backend,
    BackendState,
    Capability,
    Model,
    ModelDescriptor,
    RuntimeSnapshot,
)
from llmhost.chat import ChatMessage
from llmhost.config import (
    CONNECT_TIMEOUT_SECONDS,
    HEALTH_TIMEOUT_SECONDS,
    OLLAMA_MODELS_ENV,
    REQUEST_TIMEOUT_SECONDS,
    OllamaSettings,
)
from llmhost.errors import (
    BackendBootError,
    HttpError,
    InternalError,
    IoError,
    SerializationError,
    http_error,
)
from llmhost.process import path_exists, spawn_async, terminate_async
from llmhost.streaming import CompletionSession, StreamSession

logger = logging.getLogger(__name__)

OLLAMA_NAME = "Ollama"

W = TypeVar("W", bound=BaseModel)


def not_ollama() -> InternalError:
    return InternalError("Backend is not Ollama")


def prepare_api_url(url: Union[str, httpx.URL]) -> httpx.URL:
    """Normalize the API base URL so relative endpoint paths join under it."""
    try:
        parsed = httpx.URL(str(url))
    except httpx.InvalidURL as e:
        raise HttpError(f"Invalid Ollama API URL: '{url}'") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise HttpError(f"Invalid Ollama API URL: '{url}'")
    if not parsed.path.endswith("/"):
        parsed = parsed.copy_with(path=parsed.path + "/")
    return parsed


# ─────────────────────────────────────────────────────────────────────
# WIRE SCHEMAS
# ─────────────────────────────────────────────────────────────────────

class _TagEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str
    model: str
    size: int


class _TagsResponse(BaseModel):
    models: list[_TagEntry] = []


class _ShowResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    capabilities: list[str] = []


class _PsResponse(BaseModel):
    models: list[RuntimeSnapshot] = []


class PullProgress(BaseModel):
    """One progress record of a model download."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    status: str = ""
    digest: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status == "success" or self.error is not None


def supported_capabilities(raw: list[str]) -> Optional[frozenset[Capability]]:
    """
    Map Ollama capability strings onto Capability.

    Returns None for models this library cannot prompt (embedding models,
    or anything without chat completion). Unknown strings are ignored.
    """
    if "embedding" in raw or Capability.COMPLETION.value not in raw:
        return None
    known = {c.value for c in Capability}
    return frozenset(Capability(c) for c in raw if c in known)


def _parse(schema: type[W], response: httpx.Response, context: str) -> W:
    try:
        return schema.model_validate_json(response.content)
    except ValidationError as e:
        raise SerializationError(f"{context}: unexpected response from Ollama: {e}") from e


# ─────────────────────────────────────────────────────────────────────
# BACKEND
# ─────────────────────────────────────────────────────────────────────

class OllamaBackend(Backend):
    """
    Ollama implementation of Backend.

    Owns one httpx.AsyncClient for all requests, including streaming
    completions that outlive the call that started them.
    """

    def __init__(
        self,
        settings: Optional[OllamaSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        settings = settings or OllamaSettings()
        self._api_url = prepare_api_url(settings.api_url)
        self._models_path: Optional[Path] = settings.models_path
        self._executable = settings.executable
        self._keep_alive = settings.keep_alive
        self._boot_attempts = settings.boot_attempts
        self._boot_retry_delay = settings.boot_retry_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, connect=CONNECT_TIMEOUT_SECONDS)
        )
        self._process: Optional[subprocess.Popen] = None

    @property
    def name(self) -> str:
        return OLLAMA_NAME

    @property
    def api_url(self) -> httpx.URL:
        return self._api_url

    @property
    def models_path(self) -> Optional[Path]:
        return self._models_path

    @property
    def keep_alive(self) -> str:
        return self._keep_alive

    @property
    def process(self) -> Optional[subprocess.Popen]:
        """The `ollama serve` process, if this backend started it."""
        return self._process

    # ── HTTP helpers ───────────────────────────────────────────────────

    def url(self, path: str) -> httpx.URL:
        return self._api_url.join(path)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def call(self, method: str, path: str, context: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request to the Ollama API and fail on HTTP error status.

        A refused connection is reported as BackendNotRunningError, anything
        else as HttpError.
        """
        try:
            response = await self._client.request(method, self.url(path), **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise http_error(e, context, backend=self.name) from e
        return response

    # ── discovery ──────────────────────────────────────────────────────

    async def refresh_models(self) -> None:
        async with self._lock.writer_lock:
            response = await self.call("GET", "tags", "Listing Ollama models")
            tags = _parse(_TagsResponse, response, "Listing Ollama models")
            details = await asyncio.gather(*(self._show(entry.name) for entry in tags.models))

            models: list[Model] = []
            for entry, detail in zip(tags.models, details):
                capabilities = supported_capabilities(detail.capabilities)
                if capabilities is None:
                    logger.debug(f"Skipping {entry.name}: capabilities {detail.capabilities}")
                    continue
                descriptor = ModelDescriptor(
                    name=entry.name,
                    id=entry.model,
                    size=entry.size,
                    capabilities=capabilities,
                )
                models.append(OllamaModel(descriptor, self))

            self._models = models
            logger.info(f"{self.name}: {len(models)} models available")

    async def _show(self, model_name: str) -> _ShowResponse:
        context = f"Fetching details for '{model_name}'"
        response = await self.call("POST", "show", context, json={"model": model_name})
        return _parse(_ShowResponse, response, context)

    async def running_models(self) -> list[RuntimeSnapshot]:
        async with self._lock.reader_lock:
            response = await self.call("GET", "ps", "Listing running Ollama models")
            return _parse(_PsResponse, response, "Listing running Ollama models").models

    # ── health & lifecycle ─────────────────────────────────────────────

    async def is_running(self) -> bool:
        async with self._lock.reader_lock:
            running, _ = await self._probe()
            if self._state != BackendState.BOOTING:
                self._state = BackendState.RUNNING if running else BackendState.STOPPED
            return running

    async def _probe(self) -> tuple[bool, str]:
        """Health check. Returns (running, reason it is not)."""
        try:
            response = await self._client.head(
                self.url("version"),
                headers={"Cache-Control": "no-cache"},
                timeout=HEALTH_TIMEOUT_SECONDS,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return False, f"{type(e).__name__}: {e}"
        if response.is_success:
            return True, ""
        return False, f"health check returned HTTP {response.status_code}"

    async def boot(self) -> None:
        async with self._lock.writer_lock:
            running, reason = await self._probe()
            if running:
                logger.info("Boot - Ollama is already running")
                self._state = BackendState.RUNNING
                return

            # An owned process that stopped responding must be killed first
            await self._stop_process()

            env = {}
            if self._models_path is not None:
                logger.info(f"{OLLAMA_MODELS_ENV} directory: {self._models_path}")
                if not await path_exists(self._models_path):
                    self._state = BackendState.STOPPED
                    raise BackendBootError(
                        self.name, f"Models directory '{self._models_path}' does not exist"
                    )
                env[OLLAMA_MODELS_ENV] = str(self._models_path)

            logger.info("Booting Ollama")
            self._state = BackendState.BOOTING
            try:
                self._process = await spawn_async([self._executable, "serve"], env or None)
            except OSError as e:
                self._state = BackendState.STOPPED
                raise BackendBootError(self.name, f"Could not start '{self._executable}': {e}") from e

            try:
                await self._wait_until_running(reason)
            except BackendBootError:
                await self._stop_process()
                self._state = BackendState.STOPPED
                raise

            self._state = BackendState.RUNNING

    async def _wait_until_running(self, reason: str) -> None:
        """Poll health a fixed number of times; raise BackendBootError naming the last failure."""
        last_reason = reason
        attempts = 0

        @retry(
            stop=stop_after_attempt(self._boot_attempts),
            wait=wait_fixed(self._boot_retry_delay),
            retry=retry_if_result(lambda running: not running),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            retry_error_callback=lambda _: False,
        )
        async def poll() -> bool:
            nonlocal last_reason, attempts
            attempts += 1
            exit_code = self._process.poll() if self._process else None
            if exit_code is not None:
                raise BackendBootError(self.name, f"Ollama exited with code {exit_code} before becoming healthy")
            running, last_reason = await self._probe()
            return running

        if await poll():
            logger.info(f"Ollama booted after {attempts} tries")
            return
        raise BackendBootError(
            self.name,
            f"Ollama did not start after {self._boot_attempts} tries (last error: {last_reason})",
        )

    async def shutdown(self) -> None:
        async with self._lock.writer_lock:
            self._models = []
            try:
                await self._stop_process()
            finally:
                self._state = BackendState.STOPPED

    async def _stop_process(self) -> None:
        proc, self._process = self._process, None
        if proc is None:
            return
        logger.info("Shutting down Ollama")
        try:
            exit_code = await terminate_async(proc)
        except OSError as e:
            raise IoError(f"Failed to kill Ollama: {e}") from e
        logger.info(f"Ollama shutdown (exit code {exit_code})")

    def detach_process(self) -> Optional[subprocess.Popen]:
        """Stop owning the started service so shutdown() leaves it running."""
        proc, self._process = self._process, None
        return proc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Ollama-specific configuration ──────────────────────────────────

    async def set_api_url(self, url: str) -> None:
        """Point the backend at a different Ollama endpoint."""
        api_url = prepare_api_url(url)
        async with self._lock.writer_lock:
            self._api_url = api_url
            logger.info(f"Ollama API URL set to {api_url}")

    async def set_models_path(self, path: Union[str, Path]) -> None:
        """
        Set the directory Ollama loads models from.

        Ollama only reads it at start, so the service is restarted.

        Raises:
            IoError: If the directory does not exist
        """
        path = Path(path).expanduser()
        if not await path_exists(path):
            raise IoError(f"Models directory '{path}' does not exist")
        async with self._lock.writer_lock:
            self._models_path = path
        await self.shutdown()
        await self.boot()

    async def pull_model(self, tag: str) -> StreamSession[PullProgress]:
        """
        Download a model. Returns a session streaming PullProgress records.
        """
        async with self._lock.reader_lock:
            request = self._client.build_request(
                "POST",
                self.url("pull"),
                json={"model": tag, "stream": True},
                timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_SECONDS),
            )
            response = await self.send_stream(request, f"Pulling '{tag}'")
        logger.info(f"Pulling {tag}")
        return StreamSession(
            response,
            parse=PullProgress.model_validate_json,
            is_final=lambda progress: progress.finished,
            label=f"pull {tag}",
        )

    async def send_stream(self, request: httpx.Request, context: str) -> httpx.Response:
        """Send a streaming request; on HTTP error status read the body and raise."""
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise http_error(e, context, backend=self.name) from e

        if response.is_error:
            await response.aread()
            await response.aclose()
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise http_error(e, context, backend=self.name) from e
        return response


# ─────────────────────────────────────────────────────────────────────
# MODEL
# ─────────────────────────────────────────────────────────────────────

class OllamaModel(Model):
    """
    Ollama implementation of Model.

    Ollama loads models on use; load()/unload() still trigger it explicitly
    through /generate with an empty prompt and wait for the acknowledgement.
    """

    def access_backend(self) -> OllamaBackend:
        return super().access_backend()  # type: ignore[return-value]

    async def load(self) -> None:
        await self._generate(keep_alive=self.access_backend().keep_alive)

    async def unload(self) -> None:
        await self._generate(keep_alive=0)

    async def _generate(self, keep_alive: Union[str, int]) -> None:
        backend = self.access_backend()
        action = "Unloading" if keep_alive == 0 else "Loading"
        async with backend._lock.reader_lock:
            await backend.call(
                "POST",
                "generate",
                f"{action} '{self.name}'",
                json={"model": self.name, "keep_alive": keep_alive},
                timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_SECONDS),
            )
        self.invalidate_runtime_info()
        logger.debug(f"{action} {self.name} acknowledged")

    async def prompt(
        self,
        message: ChatMessage,
        history: list[ChatMessage],
        think: Optional[bool] = None,
    ) -> CompletionSession:
        backend = self.access_backend()
        messages = [*history, message]

        async with backend._lock.reader_lock:
            request = backend.client.build_request(
                "POST",
                backend.url("chat"),
                json={
                    "model": self.descriptor.id,
                    "keep_alive": backend.keep_alive,
                    "think": bool(think),
                    "messages": [m.to_wire() for m in messages],
                },
                timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_SECONDS),
            )
            response = await backend.send_stream(request, f"Prompting '{self.name}'")

        logger.debug(f"Prompting {self.name} with {len(messages)} messages")
        return CompletionSession(response, label=f"{backend.name}/{self.name} completion")
