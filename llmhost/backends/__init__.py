"""
Backends for locally running LLM services.

Contract-first: base.py defines WHAT, implementations define HOW.
"""

from .base import Backend, BackendState, Capability, Model, ModelDescriptor, RuntimeSnapshot
from .ollama import OllamaBackend, OllamaModel, PullProgress

__all__ = [
    "Backend",
    "BackendState",
    "Capability",
    "Model",
    "ModelDescriptor",
    "OllamaBackend",
    "OllamaModel",
    "PullProgress",
    "RuntimeSnapshot",
]
