from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


TaskId = Union[int, str]
TaskStatus = Literal["todo", "progress", "done"]

BoardKind = Literal["personal", "org"]

# Columns read back from the tasks table for every scope listing.
TASK_COLUMNS = (
    "id",
    "title",
    "description",
    "type",
    "priority",
    "assigned_to",
    "start_date",
    "end_date",
    "status",
    "user_id",
    "organisation_id",
    "is_main_board",
    "created_at",
    "updated_at",
    "ai_output",
    "ai_agent",
    "ai_status",
    "ai_history",
)


class Task(BaseModel):
    """A row of the external ``tasks`` table as broadcast to clients."""

    model_config = ConfigDict(extra="allow")

    id: Any
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[str] = None
    organisation_id: Optional[str] = None
    is_main_board: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    ai_output: Optional[str] = None
    ai_agent: Optional[str] = None
    ai_status: Optional[str] = None
    ai_history: Optional[List[Dict[str, Any]]] = None

    # ai_history is free-form JSON in the table; anything but a list reads as empty.
    @field_validator("ai_history", mode="before")
    @classmethod
    def _history_list(cls, value: Any) -> Optional[List[Dict[str, Any]]]:
        if not isinstance(value, list):
            return None
        return [turn for turn in value if isinstance(turn, dict)]

    @field_validator(
        "title", "description", "type", "priority", "assigned_to", "start_date", "end_date",
        "status", "user_id", "organisation_id", "created_at", "updated_at",
        "ai_output", "ai_agent", "ai_status",
        mode="before",
    )
    @classmethod
    def _scalar_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


def history_of(row: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """The well-formed turns of a row's ``ai_history``; anything else reads as empty."""

    value = (row or {}).get("ai_history")
    if not isinstance(value, list):
        return []
    return [
        {"role": turn["role"], "content": turn["content"]}
        for turn in value
        if isinstance(turn, dict)
        and turn.get("role") in ("system", "user", "assistant")
        and isinstance(turn.get("content"), str)
    ]


@dataclass(frozen=True)
class Scope:
    kind: BoardKind
    key: str

    @staticmethod
    def personal(user_id: str) -> "Scope":
        return Scope(kind="personal", key=str(user_id))

    @staticmethod
    def org(org_id: str) -> "Scope":
        return Scope(kind="org", key=str(org_id))

    @property
    def room(self) -> str:
        return f"user:{self.key}" if self.kind == "personal" else f"org:{self.key}"

    @property
    def load_event(self) -> str:
        return "loadTasks" if self.kind == "personal" else "loadOrgTasks"

    @property
    def update_event(self) -> str:
        return "updateTasks" if self.kind == "personal" else "updateOrgTasks"


def scopes_for_task(row: Optional[Dict[str, Any]]) -> List[Scope]:
    """Scopes whose listing includes ``row`` (owner, assignee, org main board)."""

    if not row:
        return []
    out: List[Scope] = []
    org_id = row.get("organisation_id")
    owner = row.get("user_id")
    if owner and not org_id:
        out.append(Scope.personal(owner))
    assignee = row.get("assigned_to")
    if assignee:
        scope = Scope.personal(assignee)
        if scope not in out:
            out.append(scope)
    if org_id and row.get("is_main_board") is True:
        out.append(Scope.org(org_id))
    return out


# --- socket payloads ---


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class AddTaskPayload(_Payload):
    title: str = Field(min_length=1)
    description: Optional[str] = None


class TaskMovedPayload(_Payload):
    taskId: TaskId
    newStatus: TaskStatus


class RenameTaskPayload(_Payload):
    taskId: TaskId
    newTitle: str = Field(min_length=1)


class DeleteTaskPayload(_Payload):
    taskId: TaskId


class RejoinPayload(_Payload):
    userId: str = Field(min_length=1)
    orgId: Optional[str] = None

    @field_validator("orgId")
    @classmethod
    def _blank_org_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class SwitchBoardPayload(_Payload):
    board: BoardKind


class AIPromptPayload(_Payload):
    taskId: TaskId
    prompt: str = Field(min_length=1)
    model: Optional[str] = None
