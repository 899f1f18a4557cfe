"""Tests for OllamaModel: runtime-info cache, load/unload, prompting and disposal."""

import asyncio
import gc
import json
from datetime import timedelta

import httpx
import pytest
import respx

from llmhost.backends.base import RuntimeSnapshot
from llmhost.backends.ollama import OllamaBackend
from llmhost.chat import assistant, system, user
from llmhost.errors import BackendDisposedError, BackendNotRunningError, HttpError
from llmhost.streaming import CompletionSession, collect_text
from tests.conftest import (
    MOCK_CHAT_STREAM,
    MOCK_MODEL_1,
    MOCK_MODEL_2,
    MOCK_OLLAMA_URL,
    MOCK_TAGS_RESPONSE,
    MOCK_VRAM_BYTES,
    ps_response,
    show_handler,
)


async def refreshed_backend(settings) -> OllamaBackend:
    """Backend with the mock catalog loaded. Must run under respx.mock."""
    respx.get(MOCK_OLLAMA_URL + "tags").mock(return_value=httpx.Response(200, json=MOCK_TAGS_RESPONSE))
    respx.post(MOCK_OLLAMA_URL + "show").mock(side_effect=show_handler)
    backend = OllamaBackend(settings)
    await backend.refresh_models()
    return backend


# ─────────────────────────────────────────────────────────────────────
# RUNTIME INFO CACHE
# ─────────────────────────────────────────────────────────────────────

class TestRuntimeInfo:
    """Cached RuntimeSnapshot with expiry-based invalidation."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_loaded_model(self, ollama_settings):
        respx.get(MOCK_OLLAMA_URL + "ps").mock(return_value=httpx.Response(200, json=ps_response(MOCK_MODEL_1)))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        assert await model.is_loaded() is True
        assert await model.loaded_size() == MOCK_VRAM_BYTES
        info = await model.runtime_info()
        assert info.model_name == MOCK_MODEL_1
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_not_loaded_model(self, ollama_settings):
        respx.get(MOCK_OLLAMA_URL + "ps").mock(return_value=httpx.Response(200, json=ps_response(MOCK_MODEL_1)))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_2)

        assert await model.runtime_info() is None
        assert await model.is_loaded() is False
        assert await model.loaded_size() == -1
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_fresh_snapshot_served_from_cache(self, ollama_settings):
        ps = respx.get(MOCK_OLLAMA_URL + "ps").mock(return_value=httpx.Response(200, json=ps_response(MOCK_MODEL_1)))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        first = await model.runtime_info()
        second = await model.runtime_info()

        assert first is second
        assert ps.call_count == 1
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_expired_snapshot_refetched(self, ollama_settings):
        ps = respx.get(MOCK_OLLAMA_URL + "ps").mock(return_value=httpx.Response(
            200, json=ps_response(MOCK_MODEL_1, expires_in=timedelta(seconds=-1))
        ))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        await model.runtime_info()
        await model.runtime_info()

        assert ps.call_count == 2
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_concurrent_misses_share_one_fetch(self, ollama_settings):
        ps = respx.get(MOCK_OLLAMA_URL + "ps").mock(return_value=httpx.Response(200, json=ps_response(MOCK_MODEL_1)))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        results = await asyncio.gather(*(model.runtime_info() for _ in range(8)))

        assert ps.call_count == 1
        assert all(r is results[0] for r in results)
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalidation_during_fetch_forces_refetch(self, ollama_settings):
        """A reader queued behind a fetch that an unload overtook must not reuse it."""
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)
        stale = RuntimeSnapshot.model_validate(ps_response(MOCK_MODEL_1)["models"][0])
        fetching = asyncio.Event()
        release = asyncio.Event()
        fetches = []

        async def gated_fetch():
            fetches.append(len(fetches))
            if len(fetches) == 1:
                fetching.set()
                await release.wait()
                return [stale]
            return []

        model._fetch_running_models = gated_fetch

        first = asyncio.create_task(model.runtime_info())
        await fetching.wait()
        second = asyncio.create_task(model.runtime_info())
        await asyncio.sleep(0)
        model.invalidate_runtime_info()
        release.set()

        assert await first is stale
        assert await second is None
        assert len(fetches) == 2
        assert await model.is_loaded() is False
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_failure_propagates(self, ollama_settings):
        respx.get(MOCK_OLLAMA_URL + "ps").mock(side_effect=httpx.ConnectError("refused"))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        with pytest.raises(BackendNotRunningError):
            await model.runtime_info()
        await backend.aclose()


# ─────────────────────────────────────────────────────────────────────
# LOAD / UNLOAD
# ─────────────────────────────────────────────────────────────────────

class TestLoadUnload:

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_posts_generate(self, ollama_settings):
        generate = respx.post(MOCK_OLLAMA_URL + "generate").mock(
            return_value=httpx.Response(200, json={"model": MOCK_MODEL_1, "response": "", "done": True})
        )
        backend = await refreshed_backend(ollama_settings)

        await backend.get_model(MOCK_MODEL_1).load()

        assert json.loads(generate.calls.last.request.content) == {"model": MOCK_MODEL_1, "keep_alive": "10m"}
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unload_sends_zero_keep_alive(self, ollama_settings):
        generate = respx.post(MOCK_OLLAMA_URL + "generate").mock(
            return_value=httpx.Response(200, json={"model": MOCK_MODEL_1, "done": True, "done_reason": "unload"})
        )
        backend = await refreshed_backend(ollama_settings)

        await backend.get_model(MOCK_MODEL_1).unload()

        assert json.loads(generate.calls.last.request.content)["keep_alive"] == 0
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unload_invalidates_cache(self, ollama_settings):
        ps = respx.get(MOCK_OLLAMA_URL + "ps").mock(side_effect=[
            httpx.Response(200, json=ps_response(MOCK_MODEL_1)),
            httpx.Response(200, json=ps_response()),
        ])
        respx.post(MOCK_OLLAMA_URL + "generate").mock(return_value=httpx.Response(200, json={"done": True}))
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)

        assert await model.is_loaded()
        await model.unload()

        assert not await model.is_loaded()
        assert ps.call_count == 2
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_failure_raises_http_error(self, ollama_settings):
        respx.post(MOCK_OLLAMA_URL + "generate").mock(
            return_value=httpx.Response(500, json={"error": "out of memory"})
        )
        backend = await refreshed_backend(ollama_settings)

        with pytest.raises(HttpError, match="out of memory"):
            await backend.get_model(MOCK_MODEL_1).load()
        await backend.aclose()


# ─────────────────────────────────────────────────────────────────────
# PROMPT
# ─────────────────────────────────────────────────────────────────────

class TestPrompt:

    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_completion(self, ollama_settings):
        chat = respx.post(MOCK_OLLAMA_URL + "chat").mock(
            return_value=httpx.Response(200, content=MOCK_CHAT_STREAM.encode())
        )
        backend = await refreshed_backend(ollama_settings)
        history = [system("Answer briefly."), user("Hi"), assistant("Hello!")]

        session = await backend.get_model(MOCK_MODEL_1).prompt(user("Capital of France?"), history)

        assert isinstance(session, CompletionSession)
        assert await collect_text(session) == "The capital of France is Paris."

        payload = json.loads(chat.calls.last.request.content)
        assert payload["model"] == MOCK_MODEL_1
        assert payload["keep_alive"] == "10m"
        assert payload["think"] is False
        assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]
        assert payload["messages"][-1]["content"] == "Capital of France?"
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_think_flag_forwarded(self, ollama_settings):
        chat = respx.post(MOCK_OLLAMA_URL + "chat").mock(
            return_value=httpx.Response(200, content=MOCK_CHAT_STREAM.encode())
        )
        backend = await refreshed_backend(ollama_settings)

        session = await backend.get_model(MOCK_MODEL_1).prompt(user("Why?"), [], think=True)
        await collect_text(session)

        assert json.loads(chat.calls.last.request.content)["think"] is True
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_status_raises_before_streaming(self, ollama_settings):
        respx.post(MOCK_OLLAMA_URL + "chat").mock(
            return_value=httpx.Response(404, json={"error": f"model '{MOCK_MODEL_1}' not found"})
        )
        backend = await refreshed_backend(ollama_settings)

        with pytest.raises(HttpError) as exc_info:
            await backend.get_model(MOCK_MODEL_1).prompt(user("Hi"), [])

        assert exc_info.value.status_code == 404
        assert "not found" in exc_info.value.message
        await backend.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_service_down(self, ollama_settings):
        respx.post(MOCK_OLLAMA_URL + "chat").mock(side_effect=httpx.ConnectError("refused"))
        backend = await refreshed_backend(ollama_settings)

        with pytest.raises(BackendNotRunningError):
            await backend.get_model(MOCK_MODEL_1).prompt(user("Hi"), [])
        await backend.aclose()


# ─────────────────────────────────────────────────────────────────────
# DISPOSAL
# ─────────────────────────────────────────────────────────────────────

class TestDisposal:
    """Models only weakly reference their backend."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_model_outliving_backend(self, ollama_settings):
        backend = await refreshed_backend(ollama_settings)
        model = backend.get_model(MOCK_MODEL_1)
        assert model.backend is backend

        await backend.aclose()
        del backend
        gc.collect()

        assert model.backend is None
        with pytest.raises(BackendDisposedError):
            await model.runtime_info()
        with pytest.raises(BackendDisposedError):
            await model.prompt(user("Hi"), [])
        with pytest.raises(BackendDisposedError):
            await model.load()
