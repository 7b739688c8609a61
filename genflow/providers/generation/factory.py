from __future__ import annotations

from typing import Mapping

import httpx

from genflow.core.config import Settings
from genflow.core.errors import GenflowError
from genflow.domain.workflows import ALL_STEPS, StepKind
from genflow.providers.generation.base import GenerationProvider, KeyValidator
from genflow.providers.generation.fake import FakeGenerationProvider
from genflow.providers.generation.fal import FalVideoGenerator
from genflow.providers.generation.openai import OpenAIImageGenerator, OpenAIPromptEnhancer


ProviderRegistry = dict[StepKind, GenerationProvider]


def build_provider_registry(settings: Settings, client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    mode = (settings.provider_mode or "live").lower()
    if mode == "fake":
        return {kind: FakeGenerationProvider(kind) for kind in StepKind}
    if mode == "live":
        return {
            StepKind.ENHANCE_PROMPT: OpenAIPromptEnhancer(settings, client),
            StepKind.GENERATE_IMAGE: OpenAIImageGenerator(settings, client),
            StepKind.GENERATE_VIDEO: FalVideoGenerator(settings, client),
        }
    raise GenflowError(f"Unsupported provider mode: {mode}")


def key_checkers_for(providers: Mapping[StepKind, GenerationProvider]) -> dict[str, KeyValidator]:
    # A stored credential is checked by the adapter of the step that consumes it.
    return {step.provider: providers[step.kind] for step in ALL_STEPS if step.kind in providers}
