from __future__ import annotations

from dataclasses import dataclass, field
from collections import OrderedDict
from threading import RLock
from typing import Dict, List, Optional, Protocol, Sequence
import time

from ..config import get_settings
from ..domain.chat_models import ChatTurn


class ChatSessionStore(Protocol):
    max_turns: int

    def get(self, session_key: str) -> Optional[List[ChatTurn]]: ...

    def save(self, session_key: str, turns: Sequence[ChatTurn]) -> List[ChatTurn]: ...

    def count_sessions(self) -> int: ...


@dataclass
class _Entry:
    turns: List[ChatTurn]
    touched_at: float = field(default_factory=lambda: time.monotonic())


def trim_turns(turns: Sequence[ChatTurn], max_turns: int, prune_count: int) -> List[ChatTurn]:
    """Drop the oldest non-system turns once ``max_turns`` is exceeded.

    The leading turn is the system instruction and always survives. At least
    ``prune_count`` turns go in one cut so trimming does not happen on every
    exchange; more go if that is still not enough to get under the cap.
    """
    out = list(turns)
    if len(out) <= max_turns:
        return out
    excess = max(prune_count, len(out) - max_turns)
    del out[1 : 1 + excess]
    return out


class InMemoryChatSessionStore:
    """Bounded conversation histories keyed by session id.

    Lost on restart. ``ttl_seconds`` expires idle sessions and
    ``max_sessions`` evicts the least recently used ones; 0 disables either.
    """

    def __init__(
        self,
        max_turns: int = 30,
        prune_count: int = 10,
        ttl_seconds: float = 0,
        max_sessions: int = 0,
    ) -> None:
        if max_turns < 2:
            raise ValueError("max_turns must leave room for the system turn and one reply")
        self.max_turns = max_turns
        self.prune_count = max(1, prune_count)
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = RLock()

    def _expired(self, entry: _Entry, now: float) -> bool:
        return bool(self.ttl_seconds) and now - entry.touched_at > self.ttl_seconds

    def get(self, session_key: str) -> Optional[List[ChatTurn]]:
        with self._lock:
            entry = self._sessions.get(session_key)
            if entry is None:
                return None
            if self._expired(entry, time.monotonic()):
                del self._sessions[session_key]
                return None
            return list(entry.turns)

    def save(self, session_key: str, turns: Sequence[ChatTurn]) -> List[ChatTurn]:
        trimmed = trim_turns(turns, self.max_turns, self.prune_count)
        with self._lock:
            self._sessions[session_key] = _Entry(turns=trimmed)
            self._sessions.move_to_end(session_key)
            if self.max_sessions:
                while len(self._sessions) > self.max_sessions:
                    self._sessions.popitem(last=False)
            return list(trimmed)

    def count_sessions(self) -> int:
        with self._lock:
            now = time.monotonic()
            for key in [k for k, e in self._sessions.items() if self._expired(e, now)]:
                del self._sessions[key]
            return len(self._sessions)


_stores: Dict[str, InMemoryChatSessionStore] = {}


def get_chat_session_store(profile: str = "assistant", max_turns: int = 30) -> ChatSessionStore:
    """Process-wide store per chat profile; each profile keeps its own sessions."""

    store = _stores.get(profile)
    if store is None:
        settings = get_settings()
        store = InMemoryChatSessionStore(
            max_turns=max_turns,
            ttl_seconds=settings.chat_session_ttl_seconds,
            max_sessions=settings.chat_max_sessions,
        )
        _stores[profile] = store
    return store


def chat_session_counts() -> Dict[str, int]:
    return {profile: store.count_sessions() for profile, store in _stores.items()}


def reset_chat_session_stores() -> None:
    _stores.clear()
