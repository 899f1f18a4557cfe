"""Tools: streaming prompts addressed by integer handle.

prompt_model() starts a completion and returns immediately with a handle.
A forwarding task pushes every event to the caller's sink until the
StopEvent, so the caller only needs the handle to cancel.

Usage:
    async def sink(event):
        if not event.is_stop:
            print(event.data.message.content, end="")

    handle = await prompt_model("Ollama", "llama3:8b", user("Hello"), [], sink=sink)
    await wait_prompt(handle)   # or stop_prompt(handle) to cancel

    # Non-streaming
    text = await collect_response("Ollama", "llama3:8b", user("Hello"))
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional

from llmhost.chat import ChatMessage
from llmhost.errors import LLMHostError
from llmhost.streaming import StreamSession, collect_text
from llmhost.tools.model import get_model

logger = logging.getLogger(__name__)

EventSink = Callable[[Any], Awaitable[None]]

_handles = itertools.count(1)
_sessions: dict[int, StreamSession] = {}
_forwarders: dict[int, asyncio.Task] = {}


def track_session(session: StreamSession, sink: EventSink) -> int:
    """
    Forward a session's events to `sink` in the background.

    Returns the handle used by stop_prompt(). If the sink raises, the
    consumer is treated as gone and the session is aborted.
    """
    handle = next(_handles)
    _sessions[handle] = session
    _forwarders[handle] = asyncio.create_task(_forward(handle, session, sink), name=f"prompt-{handle}")
    return handle


async def _forward(handle: int, session: StreamSession, sink: EventSink) -> Optional[LLMHostError]:
    try:
        async for event in session.take_events():
            try:
                await sink(event)
            except Exception as e:
                logger.warning(f"Prompt {handle}: event sink failed, aborting: {e}")
                session.abort()
                break
    finally:
        session.abort()
        _sessions.pop(handle, None)
        _forwarders.pop(handle, None)
    await session.wait_closed()
    return session.error


async def prompt_model(
    backend: str,
    model: str,
    content: ChatMessage,
    history: Optional[list[ChatMessage]] = None,
    think: Optional[bool] = None,
    sink: Optional[EventSink] = None,
) -> int:
    """
    Start a streaming completion and return its handle.

    Raises:
        BackendNotFoundError, ModelNotFoundError: Unknown names
        BackendDisposedError: The model outlived its backend
        HttpError, BackendNotRunningError: The request was rejected
    """
    if sink is None:
        raise ValueError("prompt_model() requires an event sink")
    session = await get_model(backend, model).prompt(content, list(history or []), think)
    return track_session(session, sink)


def stop_prompt(handle: int) -> None:
    """Abort a prompt. Unknown or finished handles are ignored."""
    session = _sessions.pop(handle, None)
    if session is not None:
        session.abort()


async def wait_prompt(handle: int) -> None:
    """
    Wait until a prompt has been fully forwarded, stopped or abandoned.

    Returns at once for unknown or finished handles.

    Raises:
        LLMHostError: The stream was cut off by a transport or decode error
    """
    forwarder = _forwarders.get(handle)
    if forwarder is None:
        return
    error = await forwarder
    if error is not None:
        raise error


def active_prompts() -> list[int]:
    return list(_sessions)


async def abort_all_prompts() -> None:
    """Abort every in-flight session and wait for their responses to close."""
    sessions = list(_sessions.values())
    forwarders = list(_forwarders.values())
    if sessions:
        logger.info(f"Aborting {len(sessions)} in-flight prompt(s)")
    for session in sessions:
        session.abort()
    _sessions.clear()
    await asyncio.gather(*forwarders, return_exceptions=True)
    await asyncio.gather(*(s.wait_closed() for s in sessions), return_exceptions=True)


async def collect_response(
    backend: str,
    model: str,
    content: ChatMessage,
    history: Optional[list[ChatMessage]] = None,
    think: Optional[bool] = None,
) -> str:
    """Run a completion to the end and return the assistant text."""
    session = await get_model(backend, model).prompt(content, list(history or []), think)
    try:
        text = await collect_text(session)
    finally:
        session.abort()
    if session.error is not None:
        raise session.error
    return text
