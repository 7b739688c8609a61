from __future__ import annotations

import pytest

from genflow.core.config import Settings
from genflow.core.container import Services, build_services
from genflow.domain.workflows import StepKind
from genflow.persistence.db import build_engine, build_session_factory, create_schema
from genflow.providers.generation.fake import FakeGenerationProvider


TEST_MASTER_KEY = "00" * 32
PROVIDERS = ("openai", "image_gen", "video_gen")


@pytest.fixture
def settings(tmp_path) -> Settings:
    # A file-backed SQLite database per test keeps concurrent sessions realistic.
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        vault_master_key=TEST_MASTER_KEY,
        provider_mode="fake",
        workflow_execution_mode="inline",
        provider_timeout_s=5.0,
        default_user_credits=100,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def fake_providers() -> dict[StepKind, FakeGenerationProvider]:
    return {kind: FakeGenerationProvider(kind) for kind in StepKind}


@pytest.fixture
async def services(settings, engine, fake_providers) -> Services:
    services = build_services(settings, engine=engine, providers=fake_providers)
    yield services
    await services.aclose()


@pytest.fixture
def seed_user(services):
    async def _seed(user_id: str = "u1", *, credits: int = 100, credentials: bool = True) -> str:
        await services.ledger.ensure_user(user_id, initial_credits=credits)
        if credentials:
            for provider in PROVIDERS:
                await services.credentials.put(user_id, provider, f"sk-{provider}-{user_id}")
        return user_id

    return _seed
