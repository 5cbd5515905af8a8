"""
Socket.IO relay that keeps every client of a task board in sync.

A connection subscribes to its personal scope (``user:<id>`` room) and,
optionally, to an organisation main board (``org:<id>`` room). Mutations are
written through the task gateway and then the *full* task list of every
affected scope is reloaded and re-broadcast. Broadcasts for one scope are
serialised so the last emission always reflects the store's last write
(last write wins, no optimistic concurrency control).

Client events: addTask, taskMoved, renameTask, deleteTask, rejoin,
switchBoard, aiPrompt. Server events: loadTasks/updateTasks (personal),
loadOrgTasks/updateOrgTasks (org), boardSwitched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Type
from urllib.parse import parse_qs

from pydantic import BaseModel, ValidationError
from socketio.exceptions import ConnectionRefusedError

from ..domain.task_models import (
    AddTaskPayload,
    AIPromptPayload,
    DeleteTaskPayload,
    RejoinPayload,
    RenameTaskPayload,
    Scope,
    SwitchBoardPayload,
    Task,
    TaskMovedPayload,
    scopes_for_task,
)
from ..infrastructure.events import publish_task_event
from ..infrastructure.task_gateway import TaskGateway, TaskGatewayError, get_task_gateway, now_iso
from ..observability.metrics import RELAY_CONNECTIONS, RELAY_MUTATIONS

logger = logging.getLogger("aikanban.relay")

Row = Optional[Dict[str, Any]]
Ack = Dict[str, Any]


class TaskNotFound(LookupError):
    pass


def _ok(**extra: Any) -> Ack:
    return {"ok": True, **extra}


def _fail(error: str) -> Ack:
    return {"ok": False, "error": error}


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "invalid payload")
    return f"{loc}: {msg}" if loc else msg


def _task_json(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return Task.model_validate(row).model_dump(mode="json")
    except ValidationError as exc:
        logger.warning("Unexpected task row id=%s: %s", row.get("id"), exc.errors())
        return dict(row)


def _first(query: Dict[str, List[str]], name: str) -> Optional[str]:
    values = query.get(name) or []
    value = (values[0] if values else "").strip()
    if value in ("undefined", "null"):
        return None
    return value or None


def _dedupe(scopes: Iterable[Scope]) -> List[Scope]:
    out: List[Scope] = []
    for scope in scopes:
        if scope not in out:
            out.append(scope)
    return out


class TaskRelay:
    """Binds task-board events to a ``socketio.AsyncServer``."""

    def __init__(
        self,
        sio: Any,
        gateway_provider: Callable[[], TaskGateway] = get_task_gateway,
        agent: Any = None,
    ) -> None:
        self.sio = sio
        self._gateway_provider = gateway_provider
        self.agent = agent
        self._scope_locks: Dict[Scope, asyncio.Lock] = {}

    @property
    def gateway(self) -> TaskGateway:
        return self._gateway_provider()

    def register(self) -> None:
        handlers: Dict[str, Callable[..., Awaitable[Any]]] = {
            "connect": self.on_connect,
            "disconnect": self.on_disconnect,
            "addTask": self.on_add_task,
            "taskMoved": self.on_task_moved,
            "renameTask": self.on_rename_task,
            "deleteTask": self.on_delete_task,
            "rejoin": self.on_rejoin,
            "switchBoard": self.on_switch_board,
            "aiPrompt": self.on_ai_prompt,
        }
        for event, handler in handlers.items():
            self.sio.on(event, handler)

    # ------------------------------------------------------------------
    # Scope loading and broadcast
    # ------------------------------------------------------------------
    async def load_scope(self, scope: Scope) -> List[Dict[str, Any]]:
        if scope.kind == "personal":
            rows = await self.gateway.list_personal(scope.key)
        else:
            rows = await self.gateway.list_org(scope.key)
        return [_task_json(row) for row in rows]

    def _lock_for(self, scope: Scope) -> asyncio.Lock:
        lock = self._scope_locks.get(scope)
        if lock is None:
            lock = self._scope_locks[scope] = asyncio.Lock()
        return lock

    async def broadcast(self, scopes: Iterable[Scope]) -> None:
        """Reload and emit the full task list of each scope to its room."""
        for scope in _dedupe(scopes):
            async with self._lock_for(scope):
                try:
                    tasks = await self.load_scope(scope)
                except TaskGatewayError as exc:
                    logger.error("Broadcast reload failed for %s: %s", scope.room, exc)
                    continue
                await self.sio.emit(scope.update_event, tasks, to=scope.room)

    async def broadcast_rows(self, *rows: Row) -> None:
        scopes: List[Scope] = []
        for row in rows:
            scopes.extend(scopes_for_task(row))
        await self.broadcast(scopes)

    async def _push_initial(self, sid: str, scope: Scope, event: Optional[str] = None) -> bool:
        try:
            tasks = await self.load_scope(scope)
        except TaskGatewayError as exc:
            logger.error("Initial load failed for %s sid=%s: %s", scope.room, sid, exc)
            return False
        await self.sio.emit(event or scope.load_event, tasks, to=sid)
        return True

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @staticmethod
    def _sender_scopes(session: Dict[str, Any]) -> List[Scope]:
        scopes = [Scope.personal(session["user_id"])]
        if session.get("org_id"):
            scopes.append(Scope.org(session["org_id"]))
        return scopes

    async def _subscribe(self, sid: str, user_id: str, org_id: Optional[str], board: str) -> None:
        if board == "org" and not org_id:
            board = "personal"
        await self.sio.save_session(sid, {"user_id": user_id, "org_id": org_id, "board": board})
        personal = Scope.personal(user_id)
        await self.sio.enter_room(sid, personal.room)
        await self._push_initial(sid, personal)
        if org_id:
            org = Scope.org(org_id)
            await self.sio.enter_room(sid, org.room)
            await self._push_initial(sid, org)

    async def on_connect(self, sid: str, environ: Dict[str, Any], auth: Any = None) -> None:
        query = parse_qs(environ.get("QUERY_STRING", "") or "")
        auth = auth if isinstance(auth, dict) else {}
        user_id = _first(query, "userId") or (str(auth.get("userId") or "").strip() or None)
        org_id = _first(query, "orgId") or (str(auth.get("orgId") or "").strip() or None)
        board = _first(query, "board") or "personal"
        if not user_id:
            logger.warning("Refusing socket without userId sid=%s", sid)
            raise ConnectionRefusedError("userId required")
        await self._subscribe(sid, user_id, org_id, board)
        RELAY_CONNECTIONS.inc()
        logger.info("Socket connected sid=%s user=%s org=%s", sid, user_id, org_id)

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        RELAY_CONNECTIONS.dec()
        logger.info("Socket disconnected sid=%s reason=%s", sid, reason)

    async def on_rejoin(self, sid: str, data: Any = None) -> Ack:
        try:
            payload = RejoinPayload.model_validate(data or {})
        except ValidationError as exc:
            return _fail(_validation_message(exc))
        session = await self.sio.get_session(sid)
        if session.get("user_id"):
            for scope in self._sender_scopes(session):
                await self.sio.leave_room(sid, scope.room)
        board = session.get("board") or "personal"
        await self._subscribe(sid, payload.userId, payload.orgId, board)
        logger.info("Socket rejoined sid=%s user=%s org=%s", sid, payload.userId, payload.orgId)
        return _ok()

    async def on_switch_board(self, sid: str, data: Any = None) -> Ack:
        try:
            payload = SwitchBoardPayload.model_validate(data or {})
        except ValidationError as exc:
            return _fail(_validation_message(exc))
        session = await self.sio.get_session(sid)
        if payload.board == "org":
            if not session.get("org_id"):
                return _fail("No organisation on this connection")
            scope = Scope.org(session["org_id"])
        else:
            scope = Scope.personal(session["user_id"])
        session["board"] = payload.board
        await self.sio.save_session(sid, session)
        if not await self._push_initial(sid, scope, event="boardSwitched"):
            return _fail("Could not load board")
        return _ok(board=payload.board)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def _mutate(
        self,
        sid: str,
        action: str,
        payload_cls: Type[BaseModel],
        data: Any,
        apply: Callable[[Any, Dict[str, Any]], Awaitable[Tuple[Row, Row]]],
    ) -> Ack:
        try:
            payload = payload_cls.model_validate(data or {})
        except ValidationError as exc:
            RELAY_MUTATIONS.labels(action=action, outcome="invalid").inc()
            logger.warning("Rejected %s from sid=%s: %s", action, sid, exc.errors())
            return _fail(_validation_message(exc))

        session = await self.sio.get_session(sid)
        try:
            before, after = await apply(payload, session)
        except TaskNotFound as exc:
            RELAY_MUTATIONS.labels(action=action, outcome="not_found").inc()
            logger.warning("%s for unknown task %s from sid=%s", action, exc, sid)
            return _fail("Task not found")
        except TaskGatewayError as exc:
            RELAY_MUTATIONS.labels(action=action, outcome="error").inc()
            logger.error("%s failed for sid=%s: %s", action, sid, exc)
            return _fail(str(exc))

        RELAY_MUTATIONS.labels(action=action, outcome="applied").inc()
        await self.broadcast(self._sender_scopes(session) + scopes_for_task(before) + scopes_for_task(after))
        await publish_task_event(
            action,
            {"task_id": (after or before or {}).get("id"), "user_id": session.get("user_id"), "org_id": session.get("org_id")},
        )
        logger.info("relay_mutation_applied action=%s task=%s", action, (after or before or {}).get("id"))
        return _ok(task=_task_json(after) if after else None)

    async def on_add_task(self, sid: str, data: Any = None) -> Ack:
        async def apply(payload: AddTaskPayload, session: Dict[str, Any]) -> Tuple[Row, Row]:
            row: Dict[str, Any] = {"title": payload.title, "status": "todo", "user_id": session["user_id"]}
            if payload.description:
                row["description"] = payload.description
            if session.get("board") == "org" and session.get("org_id"):
                row["organisation_id"] = session["org_id"]
                row["is_main_board"] = True
            return None, await self.gateway.insert_task(row)

        return await self._mutate(sid, "addTask", AddTaskPayload, data, apply)

    async def _update(self, task_id: Any, updates: Dict[str, Any]) -> Tuple[Row, Row]:
        before = await self.gateway.get_task(task_id)
        if before is None:
            raise TaskNotFound(task_id)
        after = await self.gateway.update_task(task_id, updates)
        if after is None:
            raise TaskNotFound(task_id)
        return before, after

    async def on_task_moved(self, sid: str, data: Any = None) -> Ack:
        async def apply(payload: TaskMovedPayload, _session: Dict[str, Any]) -> Tuple[Row, Row]:
            return await self._update(payload.taskId, {"status": payload.newStatus, "updated_at": now_iso()})

        return await self._mutate(sid, "taskMoved", TaskMovedPayload, data, apply)

    async def on_rename_task(self, sid: str, data: Any = None) -> Ack:
        async def apply(payload: RenameTaskPayload, _session: Dict[str, Any]) -> Tuple[Row, Row]:
            return await self._update(payload.taskId, {"title": payload.newTitle, "updated_at": now_iso()})

        return await self._mutate(sid, "renameTask", RenameTaskPayload, data, apply)

    async def on_delete_task(self, sid: str, data: Any = None) -> Ack:
        async def apply(payload: DeleteTaskPayload, _session: Dict[str, Any]) -> Tuple[Row, Row]:
            deleted = await self.gateway.delete_task(payload.taskId)
            if deleted is None:
                raise TaskNotFound(payload.taskId)
            return deleted, None

        return await self._mutate(sid, "deleteTask", DeleteTaskPayload, data, apply)

    async def on_ai_prompt(self, sid: str, data: Any = None) -> Ack:
        try:
            payload = AIPromptPayload.model_validate(data or {})
        except ValidationError as exc:
            return _fail(_validation_message(exc))
        if self.agent is None:
            return _fail("AI assistant unavailable")
        try:
            row = await self.agent.run_prompt(payload.taskId, payload.prompt, payload.model)
        except TaskGatewayError as exc:
            logger.error("aiPrompt failed for sid=%s: %s", sid, exc)
            return _fail(str(exc))
        if row is None:
            return _fail("Task not found")
        return _ok(task=_task_json(row))
