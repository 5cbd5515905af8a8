"""Rebroadcast ``tasks`` changes that did not go through the socket relay.

Clients also write the table directly (board edits, deletes from the work
item list). The platform's realtime feed reports those rows and the bridge
pushes fresh lists to every scope the row belonged to before or after the
change, the same way relay mutations do.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from ..infrastructure.task_gateway import SupabaseTaskGateway, TaskGateway

logger = logging.getLogger("aikanban.bridge")

Row = Optional[Dict[str, Any]]


def change_rows(payload: Any) -> Tuple[Row, Row]:
    """Return ``(new, old)`` from a postgres change payload.

    The realtime client nests the rows under ``data`` as ``record`` and
    ``old_record``; flat ``new``/``old`` payloads are accepted too.
    """
    if not isinstance(payload, dict):
        return None, None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    new = data.get("record", data.get("new"))
    old = data.get("old_record", data.get("old"))
    return (new if isinstance(new, dict) and new else None), (old if isinstance(old, dict) and old else None)


class TaskChangeBridge:
    def __init__(self, broadcaster: Callable[..., Awaitable[None]]) -> None:
        self._broadcaster = broadcaster
        self._pending: Set[asyncio.Task] = set()
        self._channel: Any = None
        self._gateway: Optional[SupabaseTaskGateway] = None

    def on_change(self, payload: Any) -> Optional[asyncio.Task]:
        """Realtime callback; schedules the rebroadcast on the running loop."""
        new, old = change_rows(payload)
        if new is None and old is None:
            logger.debug("bridge_change_ignored", extra={"payload": str(payload)[:200]})
            return None
        task = asyncio.get_running_loop().create_task(self._broadcaster(new, old))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def start(self, gateway: TaskGateway) -> bool:
        if not isinstance(gateway, SupabaseTaskGateway):
            logger.info("Realtime bridge skipped: task store has no change feed")
            return False
        try:
            self._channel = await gateway.subscribe_changes(self.on_change)
        except Exception as exc:
            # The relay still serves its own mutations without the feed.
            logger.error("Realtime bridge subscription failed: %s", exc)
            return False
        self._gateway = gateway
        return True

    async def stop(self) -> None:
        if self._gateway is not None and self._channel is not None:
            await self._gateway.unsubscribe_changes(self._channel)
        self._channel = None
        self._gateway = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
