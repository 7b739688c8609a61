from __future__ import annotations

import logging

from arq.connections import RedisSettings

from genflow.core.config import get_settings
from genflow.core.container import build_services
from genflow.core.logging import configure_logging


logger = logging.getLogger(__name__)


async def run_workflow(ctx, workflow_id: str) -> str | None:
    # The event carries only the id; all state is reloaded from storage.
    services = ctx["services"]
    status = await services.state_machine.execute(workflow_id)
    return status.value if status is not None else None


async def _startup(ctx) -> None:
    # Build services once per worker process and share them across jobs.
    settings = get_settings()
    configure_logging(settings)
    ctx["services"] = build_services(settings)
    logger.info("workflow_worker_started queue=%s", settings.workflow_queue_name)


async def _shutdown(ctx) -> None:
    services = ctx.get("services")
    if services is not None:
        await services.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.workflow_queue_name
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.workflow_job_timeout_s
    # Redelivery is safe (execute claims first) but a failed run is terminal.
    max_tries = 1
    functions = [run_workflow]
    on_startup = _startup
    on_shutdown = _shutdown
