"""Access to the external ``tasks`` table.

The relay never owns task state: every read and write goes through a
``TaskGateway``. ``SupabaseTaskGateway`` talks to the hosted platform with the
async client; ``InMemoryTaskGateway`` backs local development and tests
(``AIKANBAN_TASK_STORE=memory``).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from ..config import ConfigurationError, get_settings
from ..domain.task_models import TASK_COLUMNS


logger = logging.getLogger("aikanban.gateway")

_UNSAFE_FILTER_CHARS = re.compile(r"[,()\"\\\s]")


class TaskGatewayError(RuntimeError):
    """A read or write against the external platform failed."""


class TaskGateway(Protocol):
    async def list_personal(self, user_id: str) -> List[Dict[str, Any]]: ...

    async def list_org(self, org_id: str) -> List[Dict[str, Any]]: ...

    async def list_by_status(self, status: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...

    async def get_task(self, task_id: Any) -> Optional[Dict[str, Any]]: ...

    async def insert_task(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def delete_task(self, task_id: Any) -> Optional[Dict[str, Any]]: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _filter_value(value: Any) -> str:
    text = str(value)
    if not text or _UNSAFE_FILTER_CHARS.search(text):
        raise TaskGatewayError(f"Invalid identifier for filter: {text!r}")
    return text


class SupabaseTaskGateway:
    def __init__(self, url: str, key: str, table: str = "tasks") -> None:
        self._url = url
        self._key = key
        self._table = table
        self._client: Optional[AsyncClient] = None
        self._client_lock = asyncio.Lock()
        self._select = ",".join(TASK_COLUMNS)

    async def _get_client(self) -> AsyncClient:
        if self._client is not None:
            return self._client
        async with self._client_lock:
            if self._client is None:
                self._client = await acreate_client(self._url, self._key)
        return self._client

    async def _run(self, op: str, build) -> List[Dict[str, Any]]:
        client = await self._get_client()
        try:
            resp = await build(client.table(self._table)).execute()
        except APIError as exc:
            logger.warning("supabase_%s_failed", op, extra={"err": str(exc)})
            raise TaskGatewayError(f"{op} failed: {exc.message or exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("supabase_%s_unreachable", op, extra={"err": str(exc)})
            raise TaskGatewayError(f"{op} failed: {exc}") from exc
        return list(resp.data or [])

    async def list_personal(self, user_id: str) -> List[Dict[str, Any]]:
        uid = _filter_value(user_id)
        return await self._run(
            "list_personal",
            lambda t: t.select(self._select)
            .or_(f"and(organisation_id.is.null,user_id.eq.{uid}),assigned_to.eq.{uid}")
            .order("created_at", desc=True),
        )

    async def list_org(self, org_id: str) -> List[Dict[str, Any]]:
        return await self._run(
            "list_org",
            lambda t: t.select(self._select)
            .eq("organisation_id", org_id)
            .eq("is_main_board", True)
            .order("created_at", desc=True),
        )

    async def list_by_status(self, status: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        def build(t):
            q = t.select(self._select).eq("status", status).order("created_at")
            return q.limit(limit) if limit else q

        return await self._run("list_by_status", build)

    async def get_task(self, task_id: Any) -> Optional[Dict[str, Any]]:
        rows = await self._run("get_task", lambda t: t.select(self._select).eq("id", task_id).limit(1))
        return rows[0] if rows else None

    async def insert_task(self, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._run("insert_task", lambda t: t.insert(row))
        if not rows:
            raise TaskGatewayError("insert_task returned no row")
        return rows[0]

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self._run("update_task", lambda t: t.update(updates).eq("id", task_id))
        return rows[0] if rows else None

    async def delete_task(self, task_id: Any) -> Optional[Dict[str, Any]]:
        rows = await self._run("delete_task", lambda t: t.delete().eq("id", task_id))
        return rows[0] if rows else None

    async def subscribe_changes(self, callback: Callable[[Dict[str, Any]], Any], name: str = "tasks-realtime-bridge") -> Any:
        """Listen for inserts, updates and deletes on the table, whoever makes them."""
        client = await self._get_client()
        channel = client.channel(name)
        channel.on_postgres_changes("*", schema="public", table=self._table, callback=callback)
        await channel.subscribe()
        logger.info("Subscribed to %s changes on channel %s", self._table, name)
        return channel

    async def unsubscribe_changes(self, channel: Any) -> None:
        client = await self._get_client()
        await client.remove_channel(channel)


class InMemoryTaskGateway:
    """Dict-backed stand-in for the tasks table with the same scope filters."""

    def __init__(self) -> None:
        self._rows: Dict[Any, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._order: Dict[Any, int] = {}

    @staticmethod
    def _key(task_id: Any) -> Any:
        # Socket clients may send numeric ids as strings
        if isinstance(task_id, str) and task_id.isdigit():
            return int(task_id)
        return task_id

    def _newest_first(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(rows, key=lambda r: self._order.get(r["id"], 0), reverse=True)

    async def list_personal(self, user_id: str) -> List[Dict[str, Any]]:
        uid = str(user_id)
        rows = [
            dict(r)
            for r in self._rows.values()
            if (r.get("organisation_id") is None and r.get("user_id") == uid) or r.get("assigned_to") == uid
        ]
        return self._newest_first(rows)

    async def list_org(self, org_id: str) -> List[Dict[str, Any]]:
        oid = str(org_id)
        rows = [
            dict(r)
            for r in self._rows.values()
            if r.get("organisation_id") == oid and r.get("is_main_board") is True
        ]
        return self._newest_first(rows)

    async def list_by_status(self, status: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._rows.values() if r.get("status") == status]
        rows.sort(key=lambda r: self._order.get(r["id"], 0))
        return rows[:limit] if limit else rows

    async def get_task(self, task_id: Any) -> Optional[Dict[str, Any]]:
        row = self._rows.get(self._key(task_id))
        return dict(row) if row else None

    async def insert_task(self, row: Dict[str, Any]) -> Dict[str, Any]:
        tid = row.get("id") or next(self._ids)
        stamp = now_iso()
        stored = {col: None for col in TASK_COLUMNS}
        stored.update({"created_at": stamp, "updated_at": stamp})
        stored.update(row)
        stored["id"] = tid
        self._rows[tid] = stored
        self._order[tid] = next(self._seq)
        return dict(stored)

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = self._rows.get(self._key(task_id))
        if row is None:
            return None
        row.update(updates)
        return dict(row)

    async def delete_task(self, task_id: Any) -> Optional[Dict[str, Any]]:
        row = self._rows.pop(self._key(task_id), None)
        self._order.pop(self._key(task_id), None)
        return dict(row) if row else None


_gateway: TaskGateway | None = None


def get_task_gateway() -> TaskGateway:
    global _gateway
    if _gateway is not None:
        return _gateway
    settings = get_settings()
    if settings.task_store == "memory":
        _gateway = InMemoryTaskGateway()
    elif settings.task_store == "supabase":
        url, key = settings.require_supabase()
        _gateway = SupabaseTaskGateway(url, key)
    else:
        raise ConfigurationError(f"Unknown AIKANBAN_TASK_STORE: {settings.task_store}")
    return _gateway


def set_task_gateway(gateway: TaskGateway | None) -> None:
    global _gateway
    _gateway = gateway
