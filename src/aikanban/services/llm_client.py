from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import logging
import os
import time

import httpx
import openai
from langchain_openai import ChatOpenAI

from ..observability.metrics import LLM_LATENCY
from .model_router import ModelRouter, ProviderSelection


logger = logging.getLogger("aikanban.services")
LOG = logging.getLogger("aikanban.llm")


class LLMCallError(RuntimeError):
    """The external completion call failed or returned nothing usable."""


@dataclass(frozen=True)
class Completion:
    text: str
    provider: str
    model: str


def _build_chat_model(
    selection: ProviderSelection,
    *,
    temperature: Optional[float],
    max_tokens: Optional[int],
) -> ChatOpenAI:
    api_key = os.getenv(selection.api_key_env)
    # No client-side retries: a failed call is surfaced to the caller as-is.
    kwargs = dict(
        api_key=api_key,
        base_url=selection.base_url,
        model=selection.model,
        max_retries=0,
    )
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if selection.headers:
        kwargs["default_headers"] = dict(selection.headers)
    return ChatOpenAI(**kwargs)


class LLMClient:
    """Async wrapper over the routed OpenAI-compatible chat model."""

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        model_factory: Optional[Callable[..., object]] = None,
    ) -> None:
        self._router = router or ModelRouter()
        self._model_factory = model_factory

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        purpose: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model_override: Optional[str] = None,
    ) -> Completion:
        """Send ``messages`` to the provider routed for ``purpose``.

        Raises ``ConfigurationError`` when no provider has credentials and
        ``LLMCallError`` for upstream failures (non-2xx, network, empty reply).
        """
        selection = self._router.select_provider(purpose)
        if model_override:
            selection = ProviderSelection(
                name=selection.name,
                model=model_override,
                api_key_env=selection.api_key_env,
                base_url=selection.base_url,
                headers=selection.headers,
            )
        factory = self._model_factory or _build_chat_model
        llm = factory(selection, temperature=temperature, max_tokens=max_tokens)

        LOG.debug("llm_invoke", extra={"provider": selection.name, "model": selection.model, "turns": len(messages)})
        start = time.perf_counter()
        try:
            res = await llm.ainvoke(messages)  # type: ignore[attr-defined]
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            LLM_LATENCY.labels(provider=selection.name, outcome="error").observe(time.perf_counter() - start)
            LOG.warning("llm_call_failed", extra={"provider": selection.name, "err": str(exc)})
            raise LLMCallError(f"{selection.name} call failed: {exc}") from exc
        LLM_LATENCY.labels(provider=selection.name, outcome="ok").observe(time.perf_counter() - start)

        text = res.content if hasattr(res, "content") else str(res)
        if not isinstance(text, str) or not text.strip():
            raise LLMCallError(f"{selection.name} returned an empty reply")
        metadata = getattr(res, "response_metadata", None) or {}
        model_used = metadata.get("model_name") or selection.model
        logger.info("LLM reply provider=%s model=%s chars=%d", selection.name, model_used, len(text))
        return Completion(text=text, provider=selection.name, model=str(model_used))


_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
