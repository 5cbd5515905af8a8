"""Unit tests for `ModelRouter` provider selection."""

from __future__ import annotations

from typing import Dict

import pytest

from src.aikanban.config import ConfigurationError
from src.aikanban.services.model_router import ModelRouter, ProviderSelection


def _router(values: Dict[str, str]) -> ModelRouter:
    return ModelRouter(env=dict(values))


def test_assistant_prefers_openrouter():
    selection = _router({"OPENROUTER_API_KEY": "or", "HF_TOKEN": "hf"}).select_provider("assistant_chat")
    assert isinstance(selection, ProviderSelection)
    assert selection.name == "openrouter"
    assert selection.model == "anthropic/claude-3-haiku"
    assert selection.headers["X-Title"] == "AI Kanban"


def test_assistant_falls_back_to_huggingface():
    selection = _router({"HF_TOKEN": "hf"}).select_provider("assistant_chat")
    assert selection.name == "huggingface"
    assert selection.base_url == "https://router.huggingface.co/v1"


def test_preferred_provider_moves_to_front():
    router = _router({"OPENROUTER_API_KEY": "or", "HF_TOKEN": "hf", "AIKANBAN_MODEL_PROVIDER": "huggingface"})
    assert router.select_provider("assistant_chat").name == "huggingface"


def test_model_and_base_url_overrides():
    router = _router({"OPENROUTER_API_KEY": "or", "OPENROUTER_MODEL": "meta/llama", "OPENROUTER_BASE_URL": "http://proxy/v1"})
    selection = router.select_provider("assistant_chat")
    assert selection.model == "meta/llama"
    assert selection.base_url == "http://proxy/v1"


def test_missing_keys_name_the_variables():
    with pytest.raises(ConfigurationError) as exc:
        _router({}).select_provider("assistant_chat")
    assert str(exc.value) == "Missing OPENROUTER_API_KEY or HF_TOKEN"
    assert _router({}).maybe_select_provider("gemini_chat") is None


def test_blank_key_does_not_count():
    assert _router({"GEMINI_API_KEY": "  "}).provider_available("gemini") is False


def test_allowed_providers_restrict_choice():
    router = ModelRouter(env={"OPENROUTER_API_KEY": "or", "HF_TOKEN": "hf"}, allowed_providers=["huggingface"])
    assert router.select_provider("assistant_chat").name == "huggingface"


@pytest.mark.parametrize(
    "requested,expected",
    [
        ("anthropic/claude-3-haiku", "anthropic/claude-3-haiku"),
        ("  google/gemini-2.0-flash-001 ", "google/gemini-2.0-flash-001"),
        ("gpt-5-ultra", "openai/gpt-4o-mini"),
        (None, "openai/gpt-4o-mini"),
    ],
)
def test_task_model_is_clamped_to_allow_list(requested, expected):
    assert ModelRouter.resolve_task_model(requested) == expected
