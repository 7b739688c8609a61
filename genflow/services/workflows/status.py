from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.core.errors import Forbidden, NotFound, PersistenceError
from genflow.domain.models import WorkflowExecution, WorkflowStep
from genflow.domain.workflows import StepStatus, WorkflowStatus
from genflow.persistence.repos import workflows as workflows_repo
from genflow.services.workflows.orchestrator import progress_for


@dataclass(frozen=True)
class StepView:
    id: str
    name: str
    status: str
    cost: int
    error: str | None


@dataclass(frozen=True)
class WorkflowStatusView:
    workflow_id: str
    workflow_type: str
    status: str
    progress: int
    current_step: str | None
    estimated_time_remaining: int | None
    total_cost: int
    estimated_cost: int
    actual_cost: int
    steps: tuple[StepView, ...]
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class StatusTracker:
    """Read-only projection of a workflow for polling clients."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or _utc_now

    async def get(self, user_id: str, workflow_id: str) -> WorkflowStatusView:
        try:
            async with self._session_factory() as session:
                execution = await workflows_repo.get_workflow(session, workflow_id)
                if execution is None:
                    raise NotFound(f"workflow '{workflow_id}' not found")
                if execution.user_id != user_id:
                    raise Forbidden("workflow belongs to another user")
                steps = await workflows_repo.list_steps(session, workflow_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load workflow status") from exc
        return self.project(execution, steps)

    def project(self, execution: WorkflowExecution, steps: list[WorkflowStep]) -> WorkflowStatusView:
        status = WorkflowStatus(execution.status)
        completed = sum(1 for step in steps if step.status == StepStatus.COMPLETED.value)
        # 100 is reserved for COMPLETED; the persisted column is authoritative there.
        progress = 100 if status is WorkflowStatus.COMPLETED else min(progress_for(completed, len(steps)), 99)
        current = next((step.step_id for step in steps if step.status == StepStatus.RUNNING.value), None)

        started_at = _as_utc(execution.started_at)
        remaining: int | None = None
        if status is WorkflowStatus.RUNNING and started_at is not None:
            elapsed = (self._clock() - started_at).total_seconds()
            remaining = max(0, int(execution.estimated_duration_s - elapsed))

        actual = int(execution.actual_cost or 0)
        # Until the first step bills, the estimate is the best total available.
        total_cost = actual if actual > 0 or status.is_terminal else int(execution.estimated_cost)
        return WorkflowStatusView(
            workflow_id=execution.id,
            workflow_type=execution.workflow_type,
            status=status.value,
            progress=progress,
            current_step=current,
            estimated_time_remaining=remaining,
            total_cost=total_cost,
            estimated_cost=int(execution.estimated_cost),
            actual_cost=actual,
            steps=tuple(
                StepView(id=step.step_id, name=step.name, status=step.status, cost=step.cost, error=step.error)
                for step in steps
            ),
            result=execution.result_json if status is WorkflowStatus.COMPLETED else None,
            error=execution.error,
            created_at=_as_utc(execution.created_at),
            started_at=started_at,
            completed_at=_as_utc(execution.completed_at),
        )
