"""Model registry and backend selection.

The registry knows which model ids are selectable, their context limits,
how each family expresses reasoning depth, and which adapter family serves
them. Credentials and hosts are resolved from the environment so the
selection policy stays unit-testable without importing any SDK.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


DEFAULT_MODEL = "gemini-2.5-flash"


class AdapterKind(str, Enum):
    GEMINI = "gemini"
    OPENAI_COMPAT = "openai_compat"
    ANTHROPIC = "anthropic"


class ReasoningStyle(str, Enum):
    NONE = "none"
    LEVEL = "level"  # qualitative level string (Gemini 3)
    BUDGET = "budget"  # numeric token budget (Gemini 2.5, Claude)


@dataclass(frozen=True)
class ModelSpec:
    id: str
    name: str
    token_limit: int
    max_output_tokens: Optional[int] = None


SELECTABLE_MODELS: Tuple[ModelSpec, ...] = (
    ModelSpec("gemini-2.5-flash", "Gemini 2.5 Flash", 1_000_000, 65_536),
    ModelSpec("gemini-2.5-pro", "Gemini 2.5 Pro", 2_000_000, 65_536),
    ModelSpec("gemini-3-flash-preview", "Gemini 3 Flash", 1_000_000, 65_536),
    ModelSpec("gemini-3-pro-preview", "Gemini 3 Pro", 2_000_000, 65_536),
    ModelSpec("gemini-3-flash-thinking", "Gemini 3 Flash (Thinking)", 1_000_000, 65_536),
    ModelSpec("gemini-3-pro-thinking", "Gemini 3 Pro (Thinking)", 2_000_000, 65_536),
    ModelSpec("llama-3.3-70b-versatile", "Llama 3.3 70B Versatile", 128_000, 8_192),
    ModelSpec("llama-3.1-8b-instant", "Llama 3.1 8B Instant", 128_000, 8_192),
    ModelSpec("deepseek/deepseek-chat:free", "DeepSeek V3 Chat (Free)", 128_000, 8_192),
    ModelSpec("deepseek/deepseek-r1:free", "DeepSeek R1 Reasoning (Free)", 64_000, 8_192),
    ModelSpec("meta-llama/llama-4-maverick:free", "Llama 4 Maverick (Free)", 256_000, 8_192),
    ModelSpec("meta-llama/llama-3.3-70b-instruct:free", "Llama 3.3 70B Instruct (Free)", 128_000, 8_192),
    ModelSpec("google/gemma-3-27b-it:free", "Gemma 3 27B (Free)", 96_000, 8_192),
    ModelSpec("mistral/mistral-small-3.1-24b-instruct:free", "Mistral Small 3.1 24B (Free)", 32_000, 8_192),
    ModelSpec("claude-haiku-4.5", "Claude 4.5 Haiku (Fast)", 200_000, 8_192),
    ModelSpec("claude-sonnet-4.5", "Claude 4.5 Sonnet", 200_000, 8_192),
)

_SPECS: Dict[str, ModelSpec] = {spec.id: spec for spec in SELECTABLE_MODELS}

# Ids accepted by a backend but not offered in the selector.
_API_ONLY = {"gemini-3-pro-image-preview"}

MODEL_ALIASES: Dict[str, str] = {
    "gemini-2.0-flash": DEFAULT_MODEL,
    "gemini-2.0-flash-exp": DEFAULT_MODEL,
    "gemini-1.5-pro": DEFAULT_MODEL,
    "gemini-1.5-flash": DEFAULT_MODEL,
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-3-pro-image": "gemini-3-pro-image-preview",
    "llama3-70b-8192": "llama-3.3-70b-versatile",
    "llama3-8b-8192": "llama-3.1-8b-instant",
    "llama-3.1-70b-versatile": "llama-3.3-70b-versatile",
    "llama-3.1-70b-specdec": "llama-3.3-70b-versatile",
}

# Native Anthropic ids for the selector's Claude entries.
CLAUDE_API_MODELS: Dict[str, str] = {
    "claude-sonnet-4.5": "claude-sonnet-4-5",
    "claude-haiku-4.5": "claude-haiku-4-5",
}
_CLAUDE_REASONING = {"claude-sonnet-4.5"}

_GEMINI3_IDS = (
    "gemini-3-pro",
    "gemini-3-flash",
    "gemini-3-pro-preview",
    "gemini-3-flash-preview",
    "gemini-3-pro-image",
    "gemini-3-pro-image-preview",
    "gemini-3-pro-thinking",
    "gemini-3-flash-thinking",
)


def normalize_model_for_api(model_id: Optional[str]) -> str:
    """Apply aliases and fall back to the default for unknown ids."""

    raw = (model_id or "").strip()
    if not raw:
        return DEFAULT_MODEL
    if raw in MODEL_ALIASES:
        return MODEL_ALIASES[raw]
    if raw in _SPECS or raw in _API_ONLY:
        return raw
    return DEFAULT_MODEL


def coerce_stored_model(model_id: Optional[str]) -> str:
    normalized = normalize_model_for_api(model_id)
    return normalized if normalized in _SPECS else DEFAULT_MODEL


def get_model_spec(model_id: Optional[str]) -> ModelSpec:
    return _SPECS[coerce_stored_model(model_id)]


def get_model_token_limit(model_id: Optional[str]) -> int:
    return get_model_spec(model_id).token_limit


def get_max_output_tokens(model_id: Optional[str]) -> Optional[int]:
    return get_model_spec(model_id).max_output_tokens


def is_gemini3_model(model_id: str) -> bool:
    return any(model_id.startswith(ident) or ident in model_id for ident in _GEMINI3_IDS)


def model_tier(model_id: Optional[str]) -> str:
    """Coarse speed tier used for deadlines: ``pro``, ``flash`` or ``default``."""

    m = (model_id or "").lower()
    if "pro" in m:
        return "pro"
    if "flash" in m:
        return "flash"
    return "default"


def reasoning_style(model_id: Optional[str]) -> ReasoningStyle:
    m = (model_id or "").strip()
    if not m:
        return ReasoningStyle.NONE
    if is_gemini3_model(m):
        return ReasoningStyle.LEVEL
    if normalize_model_for_api(m).startswith("gemini-2.5"):
        return ReasoningStyle.BUDGET
    if m in _CLAUDE_REASONING:
        return ReasoningStyle.BUDGET
    return ReasoningStyle.NONE


def classify_model(model_id: str) -> AdapterKind:
    """Pick the adapter family serving ``model_id``."""

    m = (model_id or "").strip()
    if m.startswith("claude-"):
        return AdapterKind.ANTHROPIC
    if "/" in m or ":free" in m:
        return AdapterKind.OPENAI_COMPAT
    if "llama" in m:
        return AdapterKind.OPENAI_COMPAT
    return AdapterKind.GEMINI


@dataclass(frozen=True)
class ProviderSelection:
    """Resolved host and credential for one backend call."""

    name: str
    kind: AdapterKind
    model: str
    api_key: Optional[str]
    base_url: str


PROVIDER_CONFIG: Dict[str, Dict[str, str]] = {
    "gemini": {
        "api_key_env": "GEMINI_API_KEY",
        "base_url_env": "GEMINI_BASE_URL",
        "default_base_url": "https://generativelanguage.googleapis.com/v1beta",
    },
    "groq": {
        "api_key_env": "GROQ_API_KEY",
        "base_url_env": "GROQ_BASE_URL",
        "default_base_url": "https://api.groq.com/openai/v1",
    },
    "openrouter": {
        "api_key_env": "OPENROUTER_API_KEY",
        "base_url_env": "OPENROUTER_BASE_URL",
        "default_base_url": "https://openrouter.ai/api/v1",
    },
    "anthropic": {
        "api_key_env": "ANTHROPIC_API_KEY",
        "base_url_env": "ANTHROPIC_BASE_URL",
        "default_base_url": "https://api.anthropic.com",
    },
}


def _provider_for(model_id: str, kind: AdapterKind) -> str:
    if kind is AdapterKind.ANTHROPIC:
        return "anthropic"
    if kind is AdapterKind.OPENAI_COMPAT:
        return "openrouter" if ("/" in model_id or ":free" in model_id) else "groq"
    return "gemini"


def resolve_provider(model_id: str, env: Optional[Mapping[str, str]] = None) -> ProviderSelection:
    """Resolve the backend host, credential and wire model id for ``model_id``."""

    env = env if env is not None else os.environ
    kind = classify_model(model_id)
    name = _provider_for(model_id, kind)
    cfg = PROVIDER_CONFIG[name]
    api_model = model_id
    if kind is AdapterKind.ANTHROPIC:
        api_model = CLAUDE_API_MODELS.get(model_id, CLAUDE_API_MODELS["claude-haiku-4.5"])
    base_url = (env.get(cfg["base_url_env"]) or cfg["default_base_url"]).rstrip("/")
    return ProviderSelection(
        name=name,
        kind=kind,
        model=api_model,
        api_key=env.get(cfg["api_key_env"]) or None,
        base_url=base_url,
    )
