from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger("aikanban.events")


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[aioredis.Redis] = None

    async def _connect(self) -> None:
        try:
            client = aioredis.Redis.from_url(self._url, socket_timeout=0.5)
            await client.ping()
            self._client = client
        except redis.RedisError as exc:
            logger.warning("redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    async def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            await self._connect()
        if not self._client:
            return False
        try:
            await self._client.publish(channel, json.dumps(payload, default=str))
            return True
        except redis.RedisError as exc:
            logger.warning("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None
            return False


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


async def publish_task_event(action: str, payload: Dict[str, Any]) -> bool:
    """Best-effort fan-out of an applied task mutation to other relay instances."""

    publisher = _get_publisher()
    if not publisher:
        return False
    return await publisher.publish(f"aikanban.events.task.{action}", payload)


def reset_publisher() -> None:
    global _publisher
    _publisher = None
