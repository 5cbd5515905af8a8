"""Session-bounded relay between the chat UI and an external LLM.

Each request resolves a conversation by session id (``anon`` when absent),
forwards ``[system, prior turns..., user]`` to the routed provider and, only
when the call succeeds, appends the exchange and trims the history. Failed
calls leave the stored session exactly as it was.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional
import logging

from ..config import ConfigurationError
from ..domain.chat_models import ChatTurn
from ..infrastructure.chat_session_store import ChatSessionStore, get_chat_session_store
from ..security.rate_limit import rate_limit_action
from .llm_client import LLMCallError, LLMClient, get_llm_client


logger = logging.getLogger("aikanban.chat")

ANONYMOUS_SESSION = "anon"


@dataclass(frozen=True)
class ChatProfile:
    name: str
    purpose: str
    system_prompt: str
    temperature: float
    max_turns: int
    max_tokens: Optional[int] = None


ASSISTANT_PROFILE = ChatProfile(
    name="assistant",
    purpose="assistant_chat",
    system_prompt="You are a helpful AI assistant. Be concise and clear.",
    temperature=0.4,
    max_turns=30,
)

GEMINI_PROFILE = ChatProfile(
    name="gemini",
    purpose="gemini_chat",
    system_prompt="You are a helpful AI assistant.",
    temperature=0.7,
    max_turns=20,
    max_tokens=500,
)


class ChatRequestInvalid(ValueError):
    """Client input error; maps to a 400."""


class ChatUpstreamError(RuntimeError):
    """The LLM could not produce a reply; maps to a 500."""

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.details = details


class ChatProxy:
    def __init__(self, profile: ChatProfile, store: ChatSessionStore, llm: LLMClient) -> None:
        self.profile = profile
        self.store = store
        self._llm = llm

    def _seed(self) -> List[ChatTurn]:
        return [ChatTurn(role="system", content=self.profile.system_prompt)]

    @staticmethod
    def _session_key(session_id: Any) -> str:
        if session_id is None:
            return ANONYMOUS_SESSION
        key = str(session_id).strip()
        return key or ANONYMOUS_SESSION

    async def reply(self, session_id: Any, message: Any) -> str:
        if not isinstance(message, str) or not message.strip():
            raise ChatRequestInvalid("Message required")

        key = self._session_key(session_id)
        rate_limit_action(
            "ai_chat",
            f"{self.profile.name}:{key}",
            limit_env="AIKANBAN_CHAT_RATE_LIMIT",
            window_env="AIKANBAN_CHAT_RATE_WINDOW_SECONDS",
            default_limit=20,
            default_window_seconds=60,
        )

        history = self.store.get(key) or self._seed()
        messages = [turn.as_message() for turn in history]
        messages.append({"role": "user", "content": message})

        try:
            completion = await self._llm.complete(
                messages,
                purpose=self.profile.purpose,
                temperature=self.profile.temperature,
                max_tokens=self.profile.max_tokens,
            )
        except (ConfigurationError, LLMCallError) as exc:
            logger.error("AI chat failed profile=%s session=%s: %s", self.profile.name, key, exc)
            raise ChatUpstreamError("AI failed", details=str(exc)) from exc

        history.append(ChatTurn(role="user", content=message))
        history.append(ChatTurn(role="assistant", content=completion.text))
        stored = self.store.save(key, history)
        logger.debug("chat_session_saved", extra={"session": key, "turns": len(stored)})
        return completion.text


def get_chat_proxy() -> ChatProxy:
    return ChatProxy(
        ASSISTANT_PROFILE,
        get_chat_session_store(ASSISTANT_PROFILE.name, ASSISTANT_PROFILE.max_turns),
        get_llm_client(),
    )


def get_gemini_chat_proxy() -> ChatProxy:
    return ChatProxy(
        GEMINI_PROFILE,
        get_chat_session_store(GEMINI_PROFILE.name, GEMINI_PROFILE.max_turns),
        get_llm_client(),
    )
