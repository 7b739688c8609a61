from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.domain.models import WorkflowExecution, WorkflowStep
from genflow.domain.workflows import StepDefinition, StepStatus, WorkflowStatus


async def create_workflow(
    session: AsyncSession,
    *,
    workflow_id: str,
    user_id: str,
    project_id: str | None,
    workflow_type: str,
    config_json: dict[str, Any],
    estimated_cost: int,
    estimated_duration_s: int,
    steps: Sequence[StepDefinition],
) -> WorkflowExecution:
    # Create the execution and its pending step rows together.
    execution = WorkflowExecution(
        id=workflow_id,
        user_id=user_id,
        project_id=project_id,
        workflow_type=workflow_type,
        config_json=config_json,
        status=WorkflowStatus.INITIALIZING.value,
        progress=0,
        estimated_cost=estimated_cost,
        actual_cost=0,
        estimated_duration_s=estimated_duration_s,
        cancel_requested=False,
    )
    session.add(execution)
    for position, step in enumerate(steps):
        session.add(
            WorkflowStep(
                workflow_id=workflow_id,
                position=position,
                step_id=step.kind.value,
                name=step.name,
                status=StepStatus.PENDING.value,
                cost=0,
            )
        )
    return execution


async def get_workflow(session: AsyncSession, workflow_id: str) -> WorkflowExecution | None:
    result = await session.execute(select(WorkflowExecution).where(WorkflowExecution.id == workflow_id))
    return result.scalar_one_or_none()


async def list_steps(session: AsyncSession, workflow_id: str) -> list[WorkflowStep]:
    result = await session.execute(
        select(WorkflowStep).where(WorkflowStep.workflow_id == workflow_id).order_by(WorkflowStep.position)
    )
    return list(result.scalars().all())


async def claim_workflow(session: AsyncSession, workflow_id: str, *, started_at: datetime) -> bool:
    # Guarded transition so redelivered start events never double-execute.
    result = await session.execute(
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == workflow_id,
            WorkflowExecution.status == WorkflowStatus.INITIALIZING.value,
        )
        .values(status=WorkflowStatus.RUNNING.value, started_at=started_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def request_cancel(session: AsyncSession, workflow_id: str) -> bool:
    # Only non-terminal workflows accept the flag.
    result = await session.execute(
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == workflow_id,
            WorkflowExecution.status.in_([WorkflowStatus.INITIALIZING.value, WorkflowStatus.RUNNING.value]),
        )
        .values(cancel_requested=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def is_cancel_requested(session: AsyncSession, workflow_id: str) -> bool:
    # Read the persisted flag rather than the identity-map copy.
    result = await session.execute(
        select(WorkflowExecution.cancel_requested).where(WorkflowExecution.id == workflow_id)
    )
    return bool(result.scalar_one_or_none())


async def mark_step_running(session: AsyncSession, step_pk: int, *, started_at: datetime) -> None:
    await session.execute(
        update(WorkflowStep)
        .where(WorkflowStep.id == step_pk, WorkflowStep.status == StepStatus.PENDING.value)
        .values(status=StepStatus.RUNNING.value, started_at=started_at)
        .execution_options(synchronize_session=False)
    )


async def complete_step(
    session: AsyncSession,
    step_pk: int,
    *,
    cost: int,
    output: dict[str, Any],
    completed_at: datetime,
) -> None:
    await session.execute(
        update(WorkflowStep)
        .where(WorkflowStep.id == step_pk)
        .values(status=StepStatus.COMPLETED.value, cost=cost, output_json=output, completed_at=completed_at)
        .execution_options(synchronize_session=False)
    )


async def fail_step(session: AsyncSession, step_pk: int, *, error: str, completed_at: datetime) -> None:
    await session.execute(
        update(WorkflowStep)
        .where(WorkflowStep.id == step_pk)
        .values(status=StepStatus.FAILED.value, error=error, completed_at=completed_at)
        .execution_options(synchronize_session=False)
    )


async def add_billed_cost(session: AsyncSession, workflow_id: str, *, cost: int, progress: int) -> None:
    # Increment in SQL so actual_cost always equals the sum of billed steps.
    await session.execute(
        update(WorkflowExecution)
        .where(WorkflowExecution.id == workflow_id)
        .values(actual_cost=WorkflowExecution.actual_cost + cost, progress=progress)
        .execution_options(synchronize_session=False)
    )


async def finish_workflow(
    session: AsyncSession,
    workflow_id: str,
    *,
    status: WorkflowStatus,
    completed_at: datetime,
    error: str | None = None,
    result: dict[str, Any] | None = None,
    from_statuses: Sequence[WorkflowStatus] = (WorkflowStatus.RUNNING,),
) -> bool:
    # Terminal states are final; the guard keeps a second writer from overriding one.
    values: dict[str, Any] = {"status": status.value, "completed_at": completed_at, "error": error}
    if result is not None:
        values["result_json"] = result
    if status is WorkflowStatus.COMPLETED:
        values["progress"] = 100
    outcome = await session.execute(
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == workflow_id,
            WorkflowExecution.status.in_([item.value for item in from_statuses]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return outcome.rowcount == 1
