from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from genflow.core.config import Settings


logger = logging.getLogger(__name__)

# Worker function name registered in genflow.workers.workflow_worker.
RUN_WORKFLOW_JOB = "run_workflow"


def workflow_job_id(workflow_id: str) -> str:
    # arq drops enqueues whose job id already exists, deduplicating re-sends.
    return f"workflow:{workflow_id}"


class WorkflowDispatcher(Protocol):
    async def dispatch(self, workflow_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


class ArqDispatcher:
    """Hand a start event carrying only the workflow id to the arq queue."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._pool: ArqRedis | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Connect lazily so building services never requires Redis.
        if self._pool is not None:
            return self._pool
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.workflow_queue_name,
                )
        return self._pool

    async def dispatch(self, workflow_id: str) -> None:
        pool = await self._get_pool()
        job = await pool.enqueue_job(
            RUN_WORKFLOW_JOB,
            workflow_id,
            _job_id=workflow_job_id(workflow_id),
            _queue_name=self._settings.workflow_queue_name,
        )
        if job is None:
            logger.info("workflow_dispatch_duplicate workflow=%s", workflow_id)
        else:
            logger.info("workflow_dispatched workflow=%s job=%s", workflow_id, job.job_id)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


class InlineDispatcher:
    # Runs the workflow in-process before returning; used by tests and local dev.

    def __init__(self, runner: Callable[[str], Awaitable[object]] | None = None) -> None:
        self._runner = runner

    def bind(self, runner: Callable[[str], Awaitable[object]]) -> None:
        self._runner = runner

    async def dispatch(self, workflow_id: str) -> None:
        if self._runner is None:
            raise RuntimeError("inline dispatcher has no workflow runner bound")
        await self._runner(workflow_id)

    async def close(self) -> None:
        return None


def build_dispatcher(settings: Settings) -> WorkflowDispatcher:
    if settings.workflow_execution_mode.lower() == "inline":
        return InlineDispatcher()
    return ArqDispatcher(settings)
