from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest
from sqlalchemy import func, select

from genflow.core.container import build_services
from genflow.core.errors import (
    Forbidden,
    InsufficientCredits,
    InvalidTransition,
    MissingCredential,
    NotFound,
    ProviderFailure,
    ValidationError,
)
from genflow.domain.models import UsageEvent, WorkflowExecution
from genflow.domain.workflows import StepKind, WorkflowStatus
from genflow.providers.generation.base import ProviderResult
from genflow.providers.generation.fake import FakeGenerationProvider
from genflow.services.workflows.orchestrator import progress_for


PROMPT = "a lighthouse on a cliff at dusk"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.dispatched: list[str] = []

    async def dispatch(self, workflow_id: str) -> None:
        self.dispatched.append(workflow_id)

    async def close(self) -> None:
        return None


class HookedProvider:
    # Runs a callback inside the provider call, before the result is returned.
    def __init__(self, kind: StepKind, hook: Callable[[], Awaitable[None]]) -> None:
        self._inner = FakeGenerationProvider(kind)
        self._hook = hook
        self.name = self._inner.name
        self.calls = self._inner.calls

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        await self._hook()
        return await self._inner.generate(credential, step_config)


async def _workflow_count(services) -> int:
    async with services.session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(WorkflowExecution))).scalar_one())


@pytest.fixture
def queued(settings, engine, fake_providers):
    # Services whose dispatcher only records, so tests drive execute() themselves.
    def _build(**overrides):
        dispatcher = RecordingDispatcher()
        built = build_services(
            overrides.pop("settings", settings),
            engine=engine,
            providers=overrides.pop("providers", fake_providers),
            dispatcher=dispatcher,
        )
        return built, dispatcher

    return _build


def test_progress_rounds_half_up() -> None:
    assert [progress_for(done, 3) for done in range(4)] == [0, 33, 67, 100]
    assert [progress_for(done, 2) for done in range(3)] == [0, 50, 100]
    assert progress_for(1, 8) == 13


@pytest.mark.asyncio
async def test_image_only_workflow_completes_and_bills_each_step(services, seed_user, fake_providers) -> None:
    user_id = await seed_user(credits=100)

    started = await services.state_machine.start(user_id, "image-only", {"prompt": PROMPT})

    assert started.estimated_cost == 7
    assert started.estimated_duration == 55
    view = await services.status.get(user_id, started.workflow_id)
    assert view.status == WorkflowStatus.COMPLETED.value
    assert view.progress == 100
    assert view.actual_cost == 7
    assert view.total_cost == 7
    assert [(step.id, step.status, step.cost) for step in view.steps] == [
        ("enhance_prompt", "completed", 2),
        ("generate_image", "completed", 5),
    ]
    assert view.result["enhanced_prompt"].startswith(PROMPT)
    assert view.result["image_url"].startswith("https://fake.local/images/")
    assert view.error is None
    assert (await services.ledger.balance(user_id)).credits == 93
    # The image step receives the enhanced prompt, not the raw one.
    assert fake_providers[StepKind.GENERATE_IMAGE].calls[0]["prompt"] == view.result["enhanced_prompt"]
    assert (await services.ledger.reconcile(user_id)).consistent


@pytest.mark.asyncio
async def test_admission_rejects_insufficient_balance_without_side_effects(services, seed_user) -> None:
    user_id = await seed_user(credits=5)

    with pytest.raises(InsufficientCredits) as excinfo:
        await services.state_machine.start(user_id, "complete", {"prompt": PROMPT})

    assert excinfo.value.required == 25
    assert excinfo.value.balance == 5
    assert await _workflow_count(services) == 0
    assert (await services.ledger.balance(user_id)).credits == 5


@pytest.mark.asyncio
async def test_admission_rejects_missing_credential(services, seed_user) -> None:
    user_id = await seed_user(credits=100, credentials=False)
    await services.credentials.put(user_id, "openai", "sk-openai")

    with pytest.raises(MissingCredential) as excinfo:
        await services.state_machine.start(user_id, "image-only", {"prompt": PROMPT})

    assert excinfo.value.provider == "image_gen"
    assert await _workflow_count(services) == 0


@pytest.mark.asyncio
async def test_admission_rejects_invalid_configuration(services, seed_user) -> None:
    user_id = await seed_user()
    with pytest.raises(ValidationError):
        await services.state_machine.start(user_id, "image-only", {"prompt": "short"})
    with pytest.raises(ValidationError):
        await services.state_machine.start(user_id, "video-from-image", {"prompt": PROMPT})
    assert await _workflow_count(services) == 0


@pytest.mark.asyncio
async def test_failed_video_step_keeps_completed_steps_billed(settings, engine, seed_user, services) -> None:
    providers = {kind: FakeGenerationProvider(kind) for kind in StepKind}
    providers[StepKind.GENERATE_VIDEO] = FakeGenerationProvider(StepKind.GENERATE_VIDEO, error="video backend unavailable")
    failing = build_services(settings, engine=engine, providers=providers)
    user_id = await seed_user(credits=100)

    started = await failing.state_machine.start(user_id, "complete", {"prompt": PROMPT})

    view = await failing.status.get(user_id, started.workflow_id)
    assert view.status == WorkflowStatus.FAILED.value
    assert view.error == "video backend unavailable"
    assert [step.status for step in view.steps] == ["completed", "completed", "failed"]
    assert view.steps[1].cost == 5
    # Only completed steps are charged; no refund and no charge for the failed step.
    assert view.actual_cost == 2 + 5
    assert (await failing.ledger.balance(user_id)).credits == 100 - 7
    assert view.progress < 100
    assert view.result is None


@pytest.mark.asyncio
async def test_cancel_between_steps_stops_before_next_step(queued, fake_providers) -> None:
    holder: dict[str, str] = {}

    async def cancel_during_enhance() -> None:
        await services.state_machine.cancel("u1", holder["workflow_id"])

    providers = dict(fake_providers)
    providers[StepKind.ENHANCE_PROMPT] = HookedProvider(StepKind.ENHANCE_PROMPT, cancel_during_enhance)
    services, dispatcher = queued(providers=providers)
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")

    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})
    holder["workflow_id"] = started.workflow_id
    assert dispatcher.dispatched == [started.workflow_id]

    final = await services.state_machine.execute(started.workflow_id)

    assert final is WorkflowStatus.CANCELLED
    view = await services.status.get("u1", started.workflow_id)
    assert view.status == "CANCELLED"
    assert view.error == "Cancelled by user"
    assert view.actual_cost == 2
    assert [step.status for step in view.steps] == ["completed", "pending"]
    assert fake_providers[StepKind.GENERATE_IMAGE].calls == []
    assert (await services.ledger.balance("u1")).credits == 98


@pytest.mark.asyncio
async def test_cancel_before_worker_claims_runs_nothing(queued, seed_user) -> None:
    services, _ = queued()
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})

    await services.state_machine.cancel("u1", started.workflow_id)
    assert await services.state_machine.execute(started.workflow_id) is WorkflowStatus.CANCELLED

    view = await services.status.get("u1", started.workflow_id)
    assert view.actual_cost == 0
    assert view.total_cost == 0
    assert (await services.ledger.balance("u1")).credits == 100


@pytest.mark.asyncio
async def test_redelivered_start_event_is_a_noop(queued) -> None:
    services, _ = queued()
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})

    assert await services.state_machine.execute(started.workflow_id) is WorkflowStatus.COMPLETED
    assert await services.state_machine.execute(started.workflow_id) is None

    assert (await services.ledger.balance("u1")).credits == 93
    debits = [row for row in await services.ledger.transactions("u1") if row.type == "DEBIT"]
    assert [row.amount for row in debits] == [2, 5]


@pytest.mark.asyncio
async def test_provider_timeout_fails_workflow(queued, settings) -> None:
    slow = {kind: FakeGenerationProvider(kind, delay_s=1.0) for kind in StepKind}
    services, _ = queued(settings=settings.model_copy(update={"provider_timeout_s": 0.05}), providers=slow)
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})

    assert await services.state_machine.execute(started.workflow_id) is WorkflowStatus.FAILED

    view = await services.status.get("u1", started.workflow_id)
    assert "timed out" in view.error
    assert [step.status for step in view.steps] == ["failed", "pending"]
    assert view.actual_cost == 0
    assert (await services.ledger.balance("u1")).credits == 100


@pytest.mark.asyncio
async def test_raised_provider_failure_fails_the_step_with_its_message(queued, fake_providers) -> None:
    async def _raise() -> None:
        raise ProviderFailure("openai.images could not reach the API")

    providers = dict(fake_providers)
    providers[StepKind.GENERATE_IMAGE] = HookedProvider(StepKind.GENERATE_IMAGE, _raise)
    services, _ = queued(providers=providers)
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})

    assert await services.state_machine.execute(started.workflow_id) is WorkflowStatus.FAILED

    view = await services.status.get("u1", started.workflow_id)
    assert view.error == "openai.images could not reach the API"
    assert [step.status for step in view.steps] == ["completed", "failed"]
    assert view.actual_cost == 2
    assert (await services.ledger.balance("u1")).credits == 98


@pytest.mark.asyncio
async def test_mid_pipeline_insufficient_credits_fails_at_that_step(queued) -> None:
    services, _ = queued()
    await services.ledger.ensure_user("u1", initial_credits=7)
    for provider in ("openai", "image_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "image-only", {"prompt": PROMPT})
    # Balance drops between admission and execution.
    await services.ledger.debit("u1", 3, "direct spend")

    assert await services.state_machine.execute(started.workflow_id) is WorkflowStatus.FAILED

    view = await services.status.get("u1", started.workflow_id)
    assert view.error.startswith("Insufficient credits")
    assert [step.status for step in view.steps] == ["completed", "failed"]
    assert view.actual_cost == 2
    assert (await services.ledger.balance("u1")).credits == 2
    assert (await services.ledger.reconcile("u1")).consistent


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_hits_100_only_on_completion(queued, fake_providers) -> None:
    observed: list[tuple[str, int]] = []
    holder: dict[str, str] = {}

    async def observe() -> None:
        view = await services.status.get("u1", holder["workflow_id"])
        observed.append((view.status, view.progress))

    providers = {kind: HookedProvider(kind, observe) for kind in StepKind}
    services, _ = queued(providers=providers)
    await services.ledger.ensure_user("u1", initial_credits=100)
    for provider in ("openai", "image_gen", "video_gen"):
        await services.credentials.put("u1", provider, f"sk-{provider}")
    started = await services.state_machine.start("u1", "complete", {"prompt": PROMPT})
    holder["workflow_id"] = started.workflow_id

    await services.state_machine.execute(started.workflow_id)
    final = await services.status.get("u1", started.workflow_id)
    observed.append((final.status, final.progress))

    assert observed == [("RUNNING", 0), ("RUNNING", 33), ("RUNNING", 67), ("COMPLETED", 100)]
    assert final.actual_cost == 25


@pytest.mark.asyncio
async def test_complete_workflow_feeds_generated_image_into_video(services, seed_user, fake_providers) -> None:
    user_id = await seed_user()

    started = await services.state_machine.start(
        user_id,
        "complete",
        {"prompt": PROMPT, "video_prompt": "slow dolly zoom toward the light"},
    )

    view = await services.status.get(user_id, started.workflow_id)
    video_call = fake_providers[StepKind.GENERATE_VIDEO].calls[0]
    assert video_call["image_url"] == view.result["image_url"]
    assert video_call["prompt"] == "slow dolly zoom toward the light"
    assert view.result["video_url"].endswith(".mp4")
    assert view.result["thumbnail_url"] == view.result["image_url"]
    assert (await services.ledger.balance(user_id)).credits == 75


@pytest.mark.asyncio
async def test_video_from_image_uses_supplied_image(services, seed_user, fake_providers) -> None:
    user_id = await seed_user()
    image_url = "https://cdn.example.com/cat.png"

    started = await services.state_machine.start(
        user_id,
        "video-from-image",
        {"image_url": image_url, "video_config": {"duration": 5, "resolution": "720p", "generate_audio": False}},
    )

    assert started.estimated_cost == 8
    view = await services.status.get(user_id, started.workflow_id)
    assert view.status == "COMPLETED"
    assert fake_providers[StepKind.GENERATE_VIDEO].calls[0]["image_url"] == image_url
    assert fake_providers[StepKind.ENHANCE_PROMPT].calls == []
    assert (await services.ledger.balance(user_id)).credits == 92


@pytest.mark.asyncio
async def test_cancel_rejections(services, seed_user) -> None:
    user_id = await seed_user()
    started = await services.state_machine.start(user_id, "image-only", {"prompt": PROMPT})

    with pytest.raises(InvalidTransition):
        await services.state_machine.cancel(user_id, started.workflow_id)
    with pytest.raises(Forbidden):
        await services.state_machine.cancel("someone-else", started.workflow_id)
    with pytest.raises(NotFound):
        await services.state_machine.cancel(user_id, "missing")


@pytest.mark.asyncio
async def test_usage_events_are_recorded_without_secrets(services, seed_user) -> None:
    user_id = await seed_user()
    started = await services.state_machine.start(user_id, "image-only", {"prompt": PROMPT})

    async with services.session_factory() as session:
        rows = (
            await session.execute(
                select(UsageEvent).where(UsageEvent.workflow_id == started.workflow_id).order_by(UsageEvent.occurred_at)
            )
        ).scalars().all()
    events = [row.event for row in rows]
    assert events[0] == "workflow_started"
    assert events.count("credits_debited") == 2
    assert events[-1] == "workflow_completed"
    assert all("sk-" not in str(row.metadata_json) for row in rows)
