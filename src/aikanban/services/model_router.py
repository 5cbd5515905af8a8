"""Routing helpers for selecting the LLM provider behind each AI feature.

The router does not couple directly to concrete SDK clients; it selects a
provider configuration that ``llm_client`` turns into an OpenAI-compatible
chat client. Every provider here speaks the OpenAI chat-completions dialect.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..config import ConfigurationError


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a call."""

    name: str
    model: str
    api_key_env: str
    base_url: str
    headers: Dict[str, str] = field(default_factory=dict)


class ModelRouter:
    """Policy-based router: first provider with credentials wins."""

    PROVIDER_CONFIG: Dict[str, Dict[str, object]] = {
        "openrouter": {
            "api_key_env": "OPENROUTER_API_KEY",
            "base_url_env": "OPENROUTER_BASE_URL",
            "model_env": "OPENROUTER_MODEL",
            "default_model": "anthropic/claude-3-haiku",
            "default_base_url": "https://openrouter.ai/api/v1",
            "headers": {"HTTP-Referer": "http://localhost:3000", "X-Title": "AI Kanban"},
        },
        "huggingface": {
            "api_key_env": "HF_TOKEN",
            "base_url_env": "HF_BASE_URL",
            "model_env": "HF_MODEL",
            "default_model": "Qwen/Qwen2.5-Coder-7B-Instruct:featherless-ai",
            "default_base_url": "https://router.huggingface.co/v1",
        },
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.0-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # The assistant chat prefers OpenRouter and falls back to the HF router.
        "assistant_chat": ("openrouter", "huggingface"),
        "gemini_chat": ("gemini",),
        # Per-task prompts and the background agent pick models from the
        # OpenRouter catalogue, so they only run there.
        "task_agent": ("openrouter",),
    }

    # Models a client may request for a per-task prompt.
    ALLOWED_TASK_MODELS: tuple[str, ...] = (
        "openai/gpt-4o-mini",
        "anthropic/claude-3-haiku",
        "google/gemini-2.0-flash-001",
    )
    DEFAULT_TASK_MODEL = "openai/gpt-4o-mini"

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("AIKANBAN_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred or None

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        return bool((self._env.get(str(cfg["api_key_env"])) or "").strip())

    def _resolve_selection(self, provider: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model = self._env.get(str(cfg["model_env"])) or str(cfg["default_model"])
        base_url = self._env.get(str(cfg["base_url_env"])) or str(cfg["default_base_url"])
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=str(cfg["api_key_env"]),
            base_url=base_url,
            headers=dict(cfg.get("headers") or {}),  # type: ignore[arg-type]
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for ``purpose``.

        Raises
        ------
        ConfigurationError
            If none of the providers configured for the purpose has an API key.
            The message names the missing variables.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["assistant_chat"]))
        if self._preferred_provider and self._preferred_provider in priority:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self._resolve_selection(provider)
        missing: List[str] = [str(self.PROVIDER_CONFIG[p]["api_key_env"]) for p in priority]
        raise ConfigurationError("Missing " + " or ".join(missing))

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except ConfigurationError:
            return None

    @classmethod
    def resolve_task_model(cls, requested: Optional[str]) -> str:
        """Clamp a client-requested model to the allow-list."""

        requested = (requested or "").strip()
        return requested if requested in cls.ALLOWED_TASK_MODELS else cls.DEFAULT_TASK_MODEL
