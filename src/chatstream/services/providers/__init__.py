"""Backend adapters selected per request by model id."""

from __future__ import annotations

from typing import Mapping, Optional

from ..model_registry import AdapterKind, classify_model, resolve_provider
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, ProviderConfigError, StreamRequest, StreamResult, TokenSink, Usage
from .gemini import GeminiAdapter
from .openai_compat import OpenAICompatAdapter


def build_adapter(model_id: str, env: Optional[Mapping[str, str]] = None) -> ProviderAdapter:
    """Classify ``model_id`` and construct the adapter serving it.

    Raises ``ProviderConfigError`` when the backend's API key is missing.
    """

    selection = resolve_provider(model_id, env)
    if selection.kind is AdapterKind.ANTHROPIC:
        return AnthropicAdapter(selection, requested_model=model_id)
    if selection.kind is AdapterKind.OPENAI_COMPAT:
        return OpenAICompatAdapter(selection)
    return GeminiAdapter(selection)


__all__ = [
    "AdapterKind",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAICompatAdapter",
    "ProviderAdapter",
    "ProviderConfigError",
    "StreamRequest",
    "StreamResult",
    "TokenSink",
    "Usage",
    "build_adapter",
    "classify_model",
]
