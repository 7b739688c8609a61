"""Workflow state machine: admission, sequential step execution, billing.

Admission never writes anything until validation, the estimate, the
balance check and credential resolution have all passed. Execution is driven
by a start event carrying only the workflow id; the worker reloads state from
storage and claims the row before doing any work, so a redelivered event is
a no-op. Each completed step is billed in the same database transaction that
records its completion.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.core.errors import (
    AuthenticationFailed,
    Forbidden,
    InsufficientCredits,
    InvalidTransition,
    MissingCredential,
    NotFound,
    PersistenceError,
    ProviderFailure,
)
from genflow.domain.models import WorkflowStep
from genflow.domain.workflows import (
    StepDefinition,
    StepKind,
    WorkflowStatus,
    WorkflowType,
    required_providers,
    step_payload,
    steps_for,
)
from genflow.persistence.repos import workflows as workflows_repo
from genflow.providers.generation.base import GenerationProvider, ProviderResult
from genflow.services.costs.estimator import AnyConfig, CostEstimator
from genflow.services.credentials import CredentialStore
from genflow.services.ledger import CreditLedger
from genflow.services.usage import record_usage_event
from genflow.services.workflows.dispatch import WorkflowDispatcher


logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def progress_for(completed: int, total: int) -> int:
    # round(100 * completed / total) with halves rounded up.
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


@dataclass(frozen=True)
class StartedWorkflow:
    workflow_id: str
    estimated_cost: int
    estimated_duration: int


class WorkflowStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        estimator: CostEstimator,
        ledger: CreditLedger,
        credentials: CredentialStore,
        providers: Mapping[StepKind, GenerationProvider],
        dispatcher: WorkflowDispatcher,
        provider_timeout_s: float,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._estimator = estimator
        self._ledger = ledger
        self._credentials = credentials
        self._providers = providers
        self._dispatcher = dispatcher
        self._provider_timeout_s = provider_timeout_s
        self._clock = clock or _utc_now

    async def start(
        self,
        user_id: str,
        workflow_type: WorkflowType | str,
        config: AnyConfig | Mapping[str, Any],
        *,
        project_id: str | None = None,
    ) -> StartedWorkflow:
        """Admit a workflow and hand it to the dispatcher.

        Raises ValidationError, InsufficientCredits, MissingCredential or
        AuthenticationFailed without creating a record or touching credits.
        """
        resolved = self._estimator.resolve(workflow_type, config)
        workflow_type = WorkflowType(workflow_type)
        estimate = self._estimator.estimate(workflow_type, resolved)

        if not await self._ledger.can_afford(user_id, estimate.cost):
            snapshot = await self._ledger.balance(user_id)
            logger.info(
                "workflow_admission_rejected user=%s type=%s required=%s balance=%s",
                user_id,
                workflow_type.value,
                estimate.cost,
                snapshot.credits,
            )
            raise InsufficientCredits(balance=snapshot.credits, required=estimate.cost)

        # Decrypt each needed credential once to prove it is usable; plaintext is discarded.
        await self._credentials.verify_available(user_id, required_providers(workflow_type))

        workflow_id = uuid4().hex
        try:
            async with self._session_factory() as session:
                await workflows_repo.create_workflow(
                    session,
                    workflow_id=workflow_id,
                    user_id=user_id,
                    project_id=project_id,
                    workflow_type=workflow_type.value,
                    config_json=resolved.model_dump(mode="json"),
                    estimated_cost=estimate.cost,
                    estimated_duration_s=estimate.duration_s,
                    steps=steps_for(workflow_type),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to create workflow") from exc

        logger.info(
            "workflow_admitted workflow=%s user=%s type=%s estimated_cost=%s",
            workflow_id,
            user_id,
            workflow_type.value,
            estimate.cost,
        )
        await record_usage_event(
            self._session_factory,
            user_id=user_id,
            event="workflow_started",
            workflow_id=workflow_id,
            metadata={"workflow_type": workflow_type.value, "estimated_cost": estimate.cost},
        )
        try:
            await self._dispatcher.dispatch(workflow_id)
        except Exception:  # noqa: BLE001 - unscheduled rows must not stay INITIALIZING
            logger.exception("workflow_dispatch_failed workflow=%s", workflow_id)
            await self._abandon(workflow_id, "Workflow could not be scheduled")
            raise
        return StartedWorkflow(
            workflow_id=workflow_id,
            estimated_cost=estimate.cost,
            estimated_duration=estimate.duration_s,
        )

    async def execute(self, workflow_id: str) -> WorkflowStatus | None:
        """Run a claimed workflow to a terminal state.

        Returns the terminal status, or None when the workflow was already
        claimed or finished by an earlier delivery.
        """
        try:
            async with self._session_factory() as session:
                claimed = await workflows_repo.claim_workflow(session, workflow_id, started_at=self._clock())
                await session.commit()
                if not claimed:
                    logger.info("workflow_execute_skipped workflow=%s", workflow_id)
                    return None
                execution = await workflows_repo.get_workflow(session, workflow_id)
                steps = await workflows_repo.list_steps(session, workflow_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to claim workflow") from exc

        user_id = execution.user_id
        config = self._estimator.resolve(execution.workflow_type, execution.config_json)
        definitions = steps_for(execution.workflow_type)
        total = len(steps)
        outputs: dict[StepKind, dict[str, Any]] = {}
        logger.info("workflow_started workflow=%s type=%s steps=%s", workflow_id, execution.workflow_type, total)

        for position, (definition, step_row) in enumerate(zip(definitions, steps)):
            # Cancellation is only observed between steps.
            if await self._cancel_requested(workflow_id):
                await self._cancel(workflow_id, user_id, completed_steps=position)
                return WorkflowStatus.CANCELLED

            await self._mark_running(step_row)
            result = await self._run_step(user_id, definition, self._step_input(config, definition.kind, outputs))
            if not result.success:
                await self._fail(workflow_id, user_id, step_row, result.error or f"{definition.name} failed")
                return WorkflowStatus.FAILED

            cost = self._estimator.step_cost(definition.kind, config)
            is_last = position == total - 1
            outputs[definition.kind] = dict(result.output)
            try:
                new_balance = await self._bill_step(
                    workflow_id,
                    user_id,
                    step_row,
                    cost=cost,
                    output=result.output,
                    progress=progress_for(position + 1, total),
                    result=_build_result(outputs) if is_last else None,
                )
            except InsufficientCredits as exc:
                await self._fail(workflow_id, user_id, step_row, exc.message)
                return WorkflowStatus.FAILED
            except PersistenceError:
                await self._fail(workflow_id, user_id, step_row, "Billing failed; step was not charged")
                raise

            await record_usage_event(
                self._session_factory,
                user_id=user_id,
                event="credits_debited",
                workflow_id=workflow_id,
                metadata={"step": definition.kind.value, "amount": cost, "balance": new_balance},
            )

        logger.info("workflow_completed workflow=%s user=%s", workflow_id, user_id)
        await record_usage_event(
            self._session_factory,
            user_id=user_id,
            event="workflow_completed",
            workflow_id=workflow_id,
            metadata={"steps": total},
        )
        return WorkflowStatus.COMPLETED

    async def cancel(self, user_id: str, workflow_id: str) -> None:
        """Request cooperative cancellation; the worker stops at the next step boundary."""
        try:
            async with self._session_factory() as session:
                execution = await workflows_repo.get_workflow(session, workflow_id)
                if execution is None:
                    raise NotFound(f"workflow '{workflow_id}' not found")
                if execution.user_id != user_id:
                    raise Forbidden("workflow belongs to another user")
                if WorkflowStatus(execution.status).is_terminal:
                    raise InvalidTransition(
                        f"cannot cancel a {execution.status} workflow",
                        details={"status": execution.status},
                    )
                accepted = await workflows_repo.request_cancel(session, workflow_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to request cancellation") from exc
        if not accepted:
            # Reached a terminal state between the read and the guarded write.
            raise InvalidTransition("workflow finished before it could be cancelled")
        logger.info("workflow_cancel_requested workflow=%s user=%s", workflow_id, user_id)

    def _step_input(self, config: AnyConfig, kind: StepKind, outputs: dict[StepKind, dict[str, Any]]) -> dict[str, Any]:
        # Later steps consume earlier outputs: enhanced prompt feeds the image, the image feeds the video.
        payload = step_payload(config, kind)
        enhanced = outputs.get(StepKind.ENHANCE_PROMPT, {}).get("enhanced_prompt")
        if kind is StepKind.GENERATE_IMAGE:
            payload["prompt"] = enhanced or config.prompt
        elif kind is StepKind.GENERATE_VIDEO:
            image_url = outputs.get(StepKind.GENERATE_IMAGE, {}).get("image_url")
            payload["image_url"] = image_url or getattr(config, "image_url", None)
            if "prompt" not in payload and enhanced:
                payload["prompt"] = enhanced
        return payload

    async def _run_step(self, user_id: str, definition: StepDefinition, payload: dict[str, Any]) -> ProviderResult:
        provider = self._providers[definition.kind]
        try:
            credential = await self._credentials.decrypt_for(user_id, definition.provider)
        except (MissingCredential, AuthenticationFailed) as exc:
            return ProviderResult(success=False, error=exc.message)
        try:
            return await asyncio.wait_for(provider.generate(credential, payload), timeout=self._provider_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("provider_timeout provider=%s step=%s", provider.name, definition.kind.value)
            return ProviderResult(
                success=False,
                error=f"{definition.name} timed out after {self._provider_timeout_s:g}s",
            )
        except ProviderFailure as exc:
            logger.warning("provider_failure provider=%s step=%s error=%s", provider.name, definition.kind.value, exc.message)
            return ProviderResult(success=False, error=exc.message)
        except Exception as exc:  # noqa: BLE001 - adapter bugs fail the step, not the worker
            logger.exception("provider_error provider=%s step=%s", provider.name, definition.kind.value)
            return ProviderResult(success=False, error=f"{definition.name} failed: {type(exc).__name__}")

    async def _cancel_requested(self, workflow_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                return await workflows_repo.is_cancel_requested(session, workflow_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to read cancellation flag") from exc

    async def _mark_running(self, step_row: WorkflowStep) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await workflows_repo.mark_step_running(session, step_row.id, started_at=self._clock())
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to update step status") from exc

    async def _bill_step(
        self,
        workflow_id: str,
        user_id: str,
        step_row: WorkflowStep,
        *,
        cost: int,
        output: dict[str, Any],
        progress: int,
        result: dict[str, Any] | None,
    ) -> int:
        # Debit, step completion, cost and progress commit together or not at all.
        attempts = 2
        for attempt in range(1, attempts + 1):
            now = self._clock()
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        charged = await self._ledger.debit(
                            user_id,
                            cost,
                            f"workflow step {step_row.step_id}",
                            {"workflow_id": workflow_id, "step_id": step_row.step_id},
                            session=session,
                        )
                        await workflows_repo.complete_step(
                            session, step_row.id, cost=cost, output=output, completed_at=now
                        )
                        await workflows_repo.add_billed_cost(session, workflow_id, cost=cost, progress=progress)
                        if result is not None:
                            await workflows_repo.finish_workflow(
                                session,
                                workflow_id,
                                status=WorkflowStatus.COMPLETED,
                                completed_at=now,
                                result=result,
                            )
                return charged.new_balance
            except SQLAlchemyError as exc:
                if attempt >= attempts:
                    raise PersistenceError("failed to bill workflow step") from exc
                logger.warning("workflow_billing_retry workflow=%s step=%s", workflow_id, step_row.step_id)
        raise PersistenceError("failed to bill workflow step")

    async def _fail(self, workflow_id: str, user_id: str, step_row: WorkflowStep, error: str) -> None:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await workflows_repo.fail_step(session, step_row.id, error=error, completed_at=now)
                    await workflows_repo.finish_workflow(
                        session, workflow_id, status=WorkflowStatus.FAILED, completed_at=now, error=error
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to record workflow failure") from exc
        logger.warning("workflow_failed workflow=%s step=%s error=%s", workflow_id, step_row.step_id, error)
        await record_usage_event(
            self._session_factory,
            user_id=user_id,
            event="workflow_failed",
            workflow_id=workflow_id,
            metadata={"step": step_row.step_id, "error": error},
        )

    async def _cancel(self, workflow_id: str, user_id: str, *, completed_steps: int) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await workflows_repo.finish_workflow(
                        session,
                        workflow_id,
                        status=WorkflowStatus.CANCELLED,
                        completed_at=self._clock(),
                        error=CANCELLED_BY_USER,
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to record cancellation") from exc
        logger.info("workflow_cancelled workflow=%s completed_steps=%s", workflow_id, completed_steps)
        await record_usage_event(
            self._session_factory,
            user_id=user_id,
            event="workflow_cancelled",
            workflow_id=workflow_id,
            metadata={"completed_steps": completed_steps},
        )

    async def _abandon(self, workflow_id: str, error: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await workflows_repo.finish_workflow(
                        session,
                        workflow_id,
                        status=WorkflowStatus.FAILED,
                        completed_at=self._clock(),
                        error=error,
                        from_statuses=(WorkflowStatus.INITIALIZING,),
                    )
        except SQLAlchemyError as exc:
            logger.warning("workflow_abandon_failed workflow=%s", workflow_id, exc_info=exc)


def _build_result(outputs: dict[StepKind, dict[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    enhance = outputs.get(StepKind.ENHANCE_PROMPT, {})
    image = outputs.get(StepKind.GENERATE_IMAGE, {})
    video = outputs.get(StepKind.GENERATE_VIDEO, {})
    if enhance.get("enhanced_prompt"):
        result["enhanced_prompt"] = enhance["enhanced_prompt"]
    if image.get("image_url"):
        result["image_url"] = image["image_url"]
    if video.get("video_url"):
        result["video_url"] = video["video_url"]
        result["thumbnail_url"] = video.get("thumbnail_url") or image.get("image_url")
    return result
