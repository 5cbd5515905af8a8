import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch):
    """Memory-backed task store, no LLM keys and fresh singletons per test."""
    from src.aikanban.config import reset_settings
    from src.aikanban.infrastructure import events
    from src.aikanban.infrastructure.chat_session_store import reset_chat_session_stores
    from src.aikanban.infrastructure.task_gateway import set_task_gateway
    from src.aikanban.security.rate_limit import reset_rate_limits

    monkeypatch.setenv("AIKANBAN_TASK_STORE", "memory")
    for key in (
        "OPENROUTER_API_KEY",
        "HF_TOKEN",
        "GEMINI_API_KEY",
        "AIKANBAN_MODEL_PROVIDER",
        "AIKANBAN_TASK_AGENT_ENABLED",
        "AIKANBAN_CHAT_SESSION_TTL_SECONDS",
        "AIKANBAN_CHAT_MAX_SESSIONS",
        "REDIS_URL",
    ):
        monkeypatch.delenv(key, raising=False)

    reset_settings()
    reset_chat_session_stores()
    set_task_gateway(None)
    events.reset_publisher()
    reset_rate_limits()
    yield
    reset_settings()
    reset_chat_session_stores()
    set_task_gateway(None)
    events.reset_publisher()
    reset_rate_limits()


class FakeSocketServer:
    """Records what a ``socketio.AsyncServer`` would send, per room and per sid."""

    def __init__(self):
        self.handlers = {}
        self.sessions = {}
        self.rooms = {}
        self.emitted = []

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None, to=None, **_kwargs):
        self.emitted.append((event, data, to))

    async def enter_room(self, sid, room, namespace=None):
        self.rooms.setdefault(room, set()).add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms.get(room, set()).discard(sid)

    async def save_session(self, sid, session, namespace=None):
        self.sessions[sid] = dict(session)

    async def get_session(self, sid, namespace=None):
        return dict(self.sessions.get(sid, {}))

    def received_by(self, sid):
        """Events a sid would have seen, directly or through a room it is in."""
        out = []
        for event, data, to in self.emitted:
            if to == sid or sid in self.rooms.get(to, set()):
                out.append((event, data))
        return out

    def last(self, sid, event):
        matches = [data for name, data in self.received_by(sid) if name == event]
        return matches[-1] if matches else None

    def clear(self):
        self.emitted.clear()


@pytest.fixture
def fake_sio():
    return FakeSocketServer()


class FakeChatModel:
    """Stands in for ``ChatOpenAI``: answers ``ainvoke`` from a script."""

    def __init__(self, replies=None, error=None, model_name="stub-model"):
        self.replies = list(replies or [])
        self.error = error
        self.model_name = model_name
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append([dict(m) for m in messages])
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else f"reply {len(self.calls)}"
        return type("Msg", (), {"content": text, "response_metadata": {"model_name": self.model_name}})()


@pytest.fixture
def fake_chat_model():
    return FakeChatModel()
