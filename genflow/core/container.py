from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from genflow.core.config import Settings, get_settings
from genflow.domain.workflows import StepKind
from genflow.persistence.db import build_engine, build_session_factory
from genflow.providers.generation.base import GenerationProvider, KeyValidator
from genflow.providers.generation.factory import build_provider_registry, key_checkers_for
from genflow.services.costs import CostEstimator
from genflow.services.credentials import CredentialStore
from genflow.services.crypto.legacy import LegacyCbcCipher
from genflow.services.crypto.vault import CredentialVault, load_master_key
from genflow.services.ledger import CreditLedger
from genflow.services.workflows.dispatch import InlineDispatcher, WorkflowDispatcher, build_dispatcher
from genflow.services.workflows.orchestrator import WorkflowStateMachine
from genflow.services.workflows.status import StatusTracker


@dataclass(frozen=True)
class Services:
    """Process-wide services, built once and passed to the API and the worker."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    vault: CredentialVault
    legacy_cipher: LegacyCbcCipher
    credentials: CredentialStore
    estimator: CostEstimator
    ledger: CreditLedger
    providers: Mapping[StepKind, GenerationProvider]
    key_checkers: Mapping[str, KeyValidator]
    dispatcher: WorkflowDispatcher
    state_machine: WorkflowStateMachine
    status: StatusTracker
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.dispatcher.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    providers: Mapping[StepKind, GenerationProvider] | None = None,
    dispatcher: WorkflowDispatcher | None = None,
) -> Services:
    settings = settings or get_settings()
    engine = engine or build_engine(settings)
    session_factory = build_session_factory(engine)

    # One key load so the GCM vault and the legacy cipher agree in dev mode.
    master_key = load_master_key(settings)
    vault = CredentialVault(master_key)
    legacy_cipher = LegacyCbcCipher.from_settings(settings, master_key=master_key)
    credentials = CredentialStore(session_factory, vault, legacy_cipher)

    http_client: httpx.AsyncClient | None = None
    if providers is None:
        if settings.provider_mode.lower() == "live":
            http_client = httpx.AsyncClient(timeout=settings.provider_timeout_s)
        providers = build_provider_registry(settings, http_client)

    estimator = CostEstimator()
    ledger = CreditLedger(session_factory)
    dispatcher = dispatcher or build_dispatcher(settings)
    state_machine = WorkflowStateMachine(
        session_factory,
        estimator=estimator,
        ledger=ledger,
        credentials=credentials,
        providers=providers,
        dispatcher=dispatcher,
        provider_timeout_s=settings.provider_timeout_s,
    )
    if isinstance(dispatcher, InlineDispatcher):
        dispatcher.bind(state_machine.execute)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        vault=vault,
        legacy_cipher=legacy_cipher,
        credentials=credentials,
        estimator=estimator,
        ledger=ledger,
        providers=providers,
        key_checkers=key_checkers_for(providers),
        dispatcher=dispatcher,
        state_machine=state_machine,
        status=StatusTracker(session_factory),
        http_client=http_client,
    )
