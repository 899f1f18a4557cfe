"""Shared test fixtures for llmhost tests."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from llmhost.config import OllamaSettings


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_OLLAMA_URL = "http://ollama.test:11434/api/"

MOCK_MODEL_1 = "llama3:8b"
MOCK_MODEL_2 = "llava:7b"
MOCK_EMBEDDING_MODEL = "nomic-embed-text:latest"

MOCK_TAGS_RESPONSE = {
    "models": [
        {"name": MOCK_MODEL_1, "model": MOCK_MODEL_1, "size": 4_661_224_676, "digest": "365c0bd3c000"},
        {"name": MOCK_MODEL_2, "model": MOCK_MODEL_2, "size": 4_733_363_377, "digest": "8dd30f6b0cb1"},
        {"name": MOCK_EMBEDDING_MODEL, "model": MOCK_EMBEDDING_MODEL, "size": 274_302_450, "digest": "0a109f422b47"},
    ]
}

MOCK_SHOW_CAPABILITIES = {
    MOCK_MODEL_1: ["completion", "tools"],
    MOCK_MODEL_2: ["completion", "vision"],
    MOCK_EMBEDDING_MODEL: ["embedding"],
}

MOCK_VRAM_BYTES = 5_137_025_024


def ps_response(*models: str, expires_in: timedelta = timedelta(minutes=5)) -> dict:
    """Build an /api/ps payload with the given models loaded."""
    expires_at = (datetime.now(timezone.utc) + expires_in).isoformat().replace("+00:00", "Z")
    return {
        "models": [
            {
                "name": name,
                "model": name,
                "size": MOCK_VRAM_BYTES + 1024,
                "size_vram": MOCK_VRAM_BYTES,
                "expires_at": expires_at,
            }
            for name in models
        ]
    }


def chat_line(content: str, done: bool = False, thinking: str = None) -> str:
    """One NDJSON record of an /api/chat stream, newline included."""
    message = {"role": "assistant", "content": content}
    if thinking is not None:
        message["thinking"] = thinking
    record = {"model": MOCK_MODEL_1, "created_at": "2024-05-01T10:00:00Z", "message": message, "done": done}
    return json.dumps(record) + "\n"


MOCK_CHAT_STREAM = (
    chat_line("The")
    + chat_line(" capital of France")
    + chat_line(" is Paris.")
    + chat_line("", done=True)
)


def show_handler(request: httpx.Request) -> httpx.Response:
    """respx side effect answering /api/show from MOCK_SHOW_CAPABILITIES."""
    name = json.loads(request.content)["model"]
    return httpx.Response(200, json={"capabilities": MOCK_SHOW_CAPABILITIES[name]})


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as the given chunks, then optionally hanging or failing."""

    def __init__(self, chunks: list[bytes], hang: bool = False, error: Exception = None):
        self.chunks = chunks
        self.hang = hang
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def ollama_settings():
    """Settings pointing at the mocked Ollama, with instant boot polling."""
    return OllamaSettings(
        api_url=MOCK_OLLAMA_URL,
        boot_attempts=3,
        boot_retry_delay=0,
    )


class FakeProcess:
    """Stand-in for subprocess.Popen."""

    def __init__(self, exit_code=None):
        self.pid = 4242
        self.exit_code = exit_code
        self.killed = False

    def poll(self):
        return self.exit_code


@pytest.fixture
def fake_launcher(monkeypatch):
    """Replace process spawn/terminate in the Ollama backend with recorders."""

    class Launcher:
        def __init__(self):
            self.spawned = []
            self.terminated = []
            self.exit_code = None
            self.spawn_error = None

        async def spawn(self, args, env_overrides=None):
            if self.spawn_error is not None:
                raise self.spawn_error
            proc = FakeProcess(self.exit_code)
            self.spawned.append((args, env_overrides, proc))
            return proc

        async def terminate(self, proc):
            proc.killed = True
            self.terminated.append(proc)
            return -9

    launcher = Launcher()
    monkeypatch.setattr("llmhost.backends.ollama.spawn_async", launcher.spawn)
    monkeypatch.setattr("llmhost.backends.ollama.terminate_async", launcher.terminate)
    return launcher


@pytest.fixture
def clean_registry():
    """Reset the process-wide registry and prompt handles around a test."""
    from llmhost.registry import clear_registry
    from llmhost.tools import prompt

    clear_registry()
    prompt._sessions.clear()
    prompt._forwarders.clear()
    yield
    clear_registry()
    prompt._sessions.clear()
    prompt._forwarders.clear()
