"""Runtime settings read from the environment.

Env vars:
- SUPABASE_URL / SUPABASE_KEY (required when AIKANBAN_TASK_STORE=supabase)
- AIKANBAN_TASK_STORE ("supabase" default, "memory" for local dev)
- AIKANBAN_ALLOWED_ORIGINS (comma separated, defaults to the dev servers)
- AIKANBAN_CHAT_SESSION_TTL_SECONDS / AIKANBAN_CHAT_MAX_SESSIONS (0 disables)
- AIKANBAN_TASK_AGENT_ENABLED / AIKANBAN_TASK_AGENT_INTERVAL_SECONDS
- AIKANBAN_REALTIME_BRIDGE (rebroadcast direct table writes, on by default)
- PORT (default 5000)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or invalid."""


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None or not str(val).strip():
        raise ConfigurationError(f"Missing required environment variable: {name}")
    return val


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    task_store: str = "supabase"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    chat_session_ttl_seconds: int = 0
    chat_max_sessions: int = 0
    task_agent_enabled: bool = False
    task_agent_interval_seconds: float = 7.0
    task_agent_stale_seconds: float = 10.0
    realtime_bridge_enabled: bool = True
    port: int = 5000

    @staticmethod
    def from_env() -> "Settings":
        origins_raw = os.getenv("AIKANBAN_ALLOWED_ORIGINS") or ""
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]
        return Settings(
            task_store=(os.getenv("AIKANBAN_TASK_STORE") or "supabase").strip().lower(),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_key=os.getenv("SUPABASE_KEY") or None,
            allowed_origins=origins or list(DEFAULT_ALLOWED_ORIGINS),
            chat_session_ttl_seconds=_env_int("AIKANBAN_CHAT_SESSION_TTL_SECONDS", 0),
            chat_max_sessions=_env_int("AIKANBAN_CHAT_MAX_SESSIONS", 0),
            task_agent_enabled=_env_flag("AIKANBAN_TASK_AGENT_ENABLED"),
            task_agent_interval_seconds=_env_float("AIKANBAN_TASK_AGENT_INTERVAL_SECONDS", 7.0),
            task_agent_stale_seconds=_env_float("AIKANBAN_TASK_AGENT_STALE_SECONDS", 10.0),
            realtime_bridge_enabled=_env_flag("AIKANBAN_REALTIME_BRIDGE", default=True),
            port=_env_int("PORT", 5000) or 5000,
        )

    def require_supabase(self) -> tuple[str, str]:
        """Return (url, key) or fail fast when the platform is not configured."""
        url = self.supabase_url or _get_env("SUPABASE_URL")
        key = self.supabase_key or _get_env("SUPABASE_KEY")
        return url, key


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (useful for tests)."""

    global _settings
    _settings = None
