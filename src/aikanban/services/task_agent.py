from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import ConfigurationError, get_settings
from ..domain.task_models import history_of
from ..infrastructure.task_gateway import TaskGateway, TaskGatewayError, get_task_gateway, now_iso
from .llm_client import LLMCallError, LLMClient, get_llm_client
from .model_router import ModelRouter


logger = logging.getLogger("aikanban.agent")

Broadcaster = Callable[..., Awaitable[None]]

PROMPT_SYSTEM = "You are an expert AI coding assistant. Be concise."
WORKER_SYSTEM = "You are an expert AI coding agent. Be concise and technical."
WORKER_FALLBACK_OUTPUT = "AI could not process this task."


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class TaskAgent:
    """LLM work attached to individual tasks.

    ``run_prompt`` serves the ``aiPrompt`` socket event; ``tick`` is one cycle
    of the optional background worker that walks tasks todo -> progress -> done.
    """

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        gateway_provider: Callable[[], TaskGateway] = get_task_gateway,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._llm = llm
        self._gateway_provider = gateway_provider
        self.broadcaster = broadcaster
        self._clock = clock

    @property
    def llm(self) -> LLMClient:
        return self._llm or get_llm_client()

    async def _broadcast(self, *rows: Optional[Dict[str, Any]]) -> None:
        if self.broadcaster is not None:
            await self.broadcaster(*rows)

    async def run_prompt(self, task_id: Any, prompt: str, model: Optional[str] = None) -> Optional[Dict[str, Any]]:
        gateway = self._gateway_provider()
        task = await gateway.get_task(task_id)
        if task is None:
            return None

        history: List[Dict[str, Any]] = history_of(task)
        history.append({"role": "user", "content": prompt})
        thinking = await gateway.update_task(task_id, {"ai_status": "thinking", "ai_history": history})
        await self._broadcast(task, thinking)

        safe_model = ModelRouter.resolve_task_model(model)
        try:
            completion = await self.llm.complete(
                [{"role": "system", "content": PROMPT_SYSTEM}, *history],
                purpose="task_agent",
                model_override=safe_model,
            )
            output, agent = completion.text, completion.model
        except (ConfigurationError, LLMCallError) as exc:
            logger.warning("Task prompt failed task=%s: %s", task_id, exc)
            output, agent = f"AI error: {exc}", safe_model

        history = history + [{"role": "assistant", "content": output}]
        done = await gateway.update_task(
            task_id,
            {
                "ai_history": history,
                "ai_output": output,
                "ai_agent": agent,
                "ai_status": "done",
                "status": "done",
                "updated_at": now_iso(),
            },
        )
        await self._broadcast(thinking, done)
        return done

    async def _finish(self, gateway: TaskGateway, task: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        logger.info("Agent finishing task %s: %s", task.get("id"), task.get("title"))
        try:
            completion = await self.llm.complete(
                [
                    {"role": "system", "content": WORKER_SYSTEM},
                    {"role": "user", "content": f"Task: {task.get('title')}. Provide a short technical progress update."},
                ],
                purpose="task_agent",
            )
            output, agent = completion.text, completion.model
        except (ConfigurationError, LLMCallError) as exc:
            logger.warning("Agent LLM call failed task=%s: %s", task.get("id"), exc)
            output, agent = WORKER_FALLBACK_OUTPUT, None
        return await gateway.update_task(
            task["id"],
            {"status": "done", "ai_output": output, "ai_agent": agent, "updated_at": now_iso()},
        )

    async def tick(self) -> List[Dict[str, Any]]:
        """Run one worker cycle and return the rows it changed.

        Any ``progress`` task idle for longer than the stale threshold is
        finished; only when nothing is in progress is the oldest ``todo``
        task started.
        """
        gateway = self._gateway_provider()
        stale_after = get_settings().task_agent_stale_seconds
        now = self._clock()
        changed: List[Dict[str, Any]] = []

        in_progress = await gateway.list_by_status("progress")
        if in_progress:
            for task in in_progress:
                touched = _parse_ts(task.get("updated_at")) or _parse_ts(task.get("created_at"))
                if touched is not None and (now - touched).total_seconds() <= stale_after:
                    continue
                done = await self._finish(gateway, task)
                if done:
                    changed.append(done)
                    await self._broadcast(task, done)
        else:
            todo = await gateway.list_by_status("todo", limit=1)
            if todo:
                task = todo[0]
                logger.info("Agent starting task %s: %s", task.get("id"), task.get("title"))
                started = await gateway.update_task(task["id"], {"status": "progress", "updated_at": now_iso()})
                if started:
                    changed.append(started)
                    await self._broadcast(task, started)
        return changed

    async def run_forever(self, interval_seconds: float) -> None:
        logger.info("Task agent loop started interval=%.1fs", interval_seconds)
        while True:
            try:
                await self.tick()
            except TaskGatewayError as exc:
                logger.error("Task agent cycle failed: %s", exc)
            await asyncio.sleep(interval_seconds)
