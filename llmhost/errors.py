"""
Structured errors for llmhost.

Every failure raised by the library carries a `kind` tag plus a human-readable
message, so a presentation layer can render it without string parsing:

    try:
        await backend.boot()
    except LLMHostError as e:
        payload = e.to_dict()  # {"kind": "backendBoot", "message": "..."}
"""

from typing import Optional

import httpx


class LLMHostError(Exception):
    """Base class for all llmhost errors."""

    kind: str = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class IoError(LLMHostError):
    """Process or filesystem failure."""
    kind = "io"


class HttpError(LLMHostError):
    """Transport failure or HTTP error status from a backend API."""
    kind = "http"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.status_code is not None:
            payload["status"] = self.status_code
        return payload


class SerializationError(LLMHostError):
    """Malformed JSON or unexpected payload shape from a backend."""
    kind = "serialization"


class BackendNotFoundError(LLMHostError):
    """No backend registered under the requested name."""
    kind = "backendNotFound"

    def __init__(self, backend: str):
        super().__init__(f"Backend '{backend}' not found")
        self.backend = backend


class ModelNotFoundError(LLMHostError):
    """Model name not present in the backend's current model list."""
    kind = "modelNotFound"

    def __init__(self, model: str, backend: str):
        super().__init__(f"Model '{model}' not found in backend '{backend}'")
        self.model = model
        self.backend = backend


class BackendNotRunningError(LLMHostError):
    """Backend is registered but its service is not accepting connections."""
    kind = "backendNotRunning"

    def __init__(self, backend: str, detail: str = ""):
        message = f"Backend '{backend}' is not running"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.backend = backend


class BackendBootError(LLMHostError):
    """Backend service could not be started."""
    kind = "backendBoot"

    def __init__(self, backend: str, reason: str):
        super().__init__(f"Failed to boot backend '{backend}': {reason}")
        self.backend = backend
        self.reason = reason


class BackendDisposedError(LLMHostError):
    """A model outlived the backend that owned it."""
    kind = "disposed"

    def __init__(self, message: str = "Backend is already disposed"):
        super().__init__(message)


class InternalError(LLMHostError):
    """Unexpected state or invariant violation."""
    kind = "internal"


def http_error(exc: httpx.HTTPError, context: str, backend: Optional[str] = None) -> LLMHostError:
    """
    Convert an httpx exception into an llmhost error.

    A refused connection means the service is not up, which callers want to
    tell apart from a failing request, so `httpx.ConnectError` becomes
    `BackendNotRunningError` when the backend name is known.
    """
    if backend is not None and isinstance(exc, httpx.ConnectError):
        return BackendNotRunningError(backend, f"{context}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return HttpError(f"{context}: HTTP {status}: {_error_text(exc.response)}", status)
    return HttpError(f"{context}: {exc}")


def _error_text(response: httpx.Response) -> str:
    """Extract the service's error message from a response, if any."""
    try:
        data = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return _body_prefix(response)
    # Ollama reports failures as {"error": "..."}
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return _body_prefix(response)


def _body_prefix(response: httpx.Response) -> str:
    try:
        return response.text[:200]
    except httpx.ResponseNotRead:
        return response.reason_phrase
