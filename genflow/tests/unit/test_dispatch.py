from __future__ import annotations

from types import SimpleNamespace

import pytest

from genflow.core.config import Settings
from genflow.services.workflows.dispatch import (
    ArqDispatcher,
    InlineDispatcher,
    build_dispatcher,
    workflow_job_id,
)


class _FakePool:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple] = {}
        self.closed = False

    async def enqueue_job(self, function: str, *args, _job_id: str, _queue_name: str):
        # Mirrors arq: an existing job id yields None instead of a second job.
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = (function, args, _queue_name)
        return SimpleNamespace(job_id=_job_id)

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_arq_dispatcher_enqueues_id_only_and_deduplicates() -> None:
    dispatcher = ArqDispatcher(Settings(_env_file=None, workflow_queue_name="wf-test"))
    pool = _FakePool()
    dispatcher._pool = pool

    await dispatcher.dispatch("abc")
    await dispatcher.dispatch("abc")

    assert pool.jobs == {"workflow:abc": ("run_workflow", ("abc",), "wf-test")}
    await dispatcher.close()
    assert pool.closed


@pytest.mark.asyncio
async def test_inline_dispatcher_runs_bound_runner() -> None:
    ran: list[str] = []

    async def runner(workflow_id: str) -> None:
        ran.append(workflow_id)

    dispatcher = InlineDispatcher()
    with pytest.raises(RuntimeError):
        await dispatcher.dispatch("abc")
    dispatcher.bind(runner)
    await dispatcher.dispatch("abc")
    assert ran == ["abc"]


def test_build_dispatcher_follows_execution_mode() -> None:
    assert isinstance(build_dispatcher(Settings(_env_file=None, workflow_execution_mode="inline")), InlineDispatcher)
    assert isinstance(build_dispatcher(Settings(_env_file=None, workflow_execution_mode="queue")), ArqDispatcher)
    assert workflow_job_id("x") == "workflow:x"
