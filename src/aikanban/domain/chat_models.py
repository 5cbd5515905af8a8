from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel


Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatTurn:
    role: Role
    content: str

    def as_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class AIChatRequest(BaseModel):
    # Loosely typed; ChatProxy rejects missing/blank messages with a 400.
    sessionId: Optional[Any] = None
    message: Optional[Any] = None


class AIChatReply(BaseModel):
    reply: str


class AIChatError(BaseModel):
    error: str
    details: Optional[str] = None


class ModelCatalog(BaseModel):
    models: List[str]
    defaultModel: str
