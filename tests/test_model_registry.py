import pytest

from src.chatstream.services.model_registry import (
    DEFAULT_MODEL,
    AdapterKind,
    ReasoningStyle,
    classify_model,
    coerce_stored_model,
    get_model_token_limit,
    model_tier,
    normalize_model_for_api,
    reasoning_style,
    resolve_provider,
)


@pytest.mark.parametrize(
    "model, kind",
    [
        ("claude-sonnet-4.5", AdapterKind.ANTHROPIC),
        ("deepseek/deepseek-r1:free", AdapterKind.OPENAI_COMPAT),
        ("llama-3.3-70b-versatile", AdapterKind.OPENAI_COMPAT),
        ("gemini-2.5-flash", AdapterKind.GEMINI),
        ("anything-else", AdapterKind.GEMINI),
    ],
)
def test_classify_model(model, kind):
    assert classify_model(model) is kind


def test_aliases_and_unknown_ids_normalize():
    assert normalize_model_for_api("gemini-1.5-pro") == DEFAULT_MODEL
    assert normalize_model_for_api("gemini-3-pro") == "gemini-3-pro-preview"
    assert normalize_model_for_api("made-up") == DEFAULT_MODEL
    assert normalize_model_for_api(None) == DEFAULT_MODEL
    assert coerce_stored_model("gemini-3-pro-image") == DEFAULT_MODEL


def test_token_limits():
    assert get_model_token_limit("gemini-2.5-pro") == 2_000_000
    assert get_model_token_limit("llama-3.1-8b-instant") == 128_000
    assert get_model_token_limit("claude-haiku-4.5") == 200_000
    assert get_model_token_limit("unknown") == get_model_token_limit(DEFAULT_MODEL)


def test_reasoning_styles():
    assert reasoning_style("gemini-3-pro-preview") is ReasoningStyle.LEVEL
    assert reasoning_style("gemini-2.5-flash") is ReasoningStyle.BUDGET
    assert reasoning_style("claude-sonnet-4.5") is ReasoningStyle.BUDGET
    assert reasoning_style("claude-haiku-4.5") is ReasoningStyle.NONE
    assert reasoning_style("llama-3.1-8b-instant") is ReasoningStyle.NONE


def test_model_tier():
    assert model_tier("gemini-2.5-pro") == "pro"
    assert model_tier("gemini-2.5-flash") == "flash"
    assert model_tier("llama-3.1-8b-instant") == "default"


def test_resolve_provider_uses_env_and_native_claude_ids():
    env = {"ANTHROPIC_API_KEY": "a-key", "OPENROUTER_BASE_URL": "https://or.example/v1/"}
    claude = resolve_provider("claude-sonnet-4.5", env)
    assert claude.name == "anthropic"
    assert claude.model == "claude-sonnet-4-5"
    assert claude.api_key == "a-key"

    router = resolve_provider("google/gemma-3-27b-it:free", env)
    assert router.name == "openrouter"
    assert router.base_url == "https://or.example/v1"
    assert router.api_key is None

    groq = resolve_provider("llama-3.3-70b-versatile", {})
    assert groq.name == "groq"
    assert groq.base_url == "https://api.groq.com/openai/v1"
