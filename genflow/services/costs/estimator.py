from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import pydantic

from genflow.core.errors import ValidationError
from genflow.domain.workflows import (
    CompleteConfig,
    ImageConfig,
    ImageOnlyConfig,
    StepKind,
    VideoConfig,
    VideoFromImageConfig,
    WorkflowType,
    parse_config,
    steps_for,
)
from genflow.services.costs import pricing


AnyConfig = ImageOnlyConfig | CompleteConfig | VideoFromImageConfig


@dataclass(frozen=True)
class StepEstimate:
    step: StepKind
    cost: int
    duration_s: int


@dataclass(frozen=True)
class CostEstimate:
    cost: int
    duration_s: int
    steps: tuple[StepEstimate, ...]


class CostEstimator:
    """Deterministic, table-driven credit and duration estimates.

    The same tables price a step at billing time, so identical inputs always
    yield identical costs.
    """

    def estimate(self, workflow_type: WorkflowType | str, config: AnyConfig | Mapping[str, Any]) -> CostEstimate:
        resolved = self.resolve(workflow_type, config)
        steps = tuple(self.step_estimate(step.kind, resolved) for step in steps_for(workflow_type))
        return CostEstimate(
            cost=sum(item.cost for item in steps),
            duration_s=sum(item.duration_s for item in steps),
            steps=steps,
        )

    def step_cost(self, kind: StepKind, config: AnyConfig) -> int:
        return self.step_estimate(kind, config).cost

    def step_estimate(self, kind: StepKind, config: AnyConfig) -> StepEstimate:
        if kind is StepKind.ENHANCE_PROMPT:
            return StepEstimate(kind, pricing.ENHANCE_PROMPT_CREDITS, pricing.ENHANCE_PROMPT_SECONDS)
        if kind is StepKind.GENERATE_IMAGE:
            image: ImageConfig = config.image_config
            return StepEstimate(
                kind,
                pricing.image_credits(image.quality, image.size),
                pricing.IMAGE_SECONDS[image.quality],
            )
        video: VideoConfig = config.video_config
        return StepEstimate(
            kind,
            pricing.video_credits(video.duration, video.resolution, video.generate_audio),
            pricing.video_seconds(video.duration, video.resolution),
        )

    @staticmethod
    def resolve(workflow_type: WorkflowType | str, config: AnyConfig | Mapping[str, Any]) -> AnyConfig:
        try:
            expected = WorkflowType(workflow_type)
        except ValueError as exc:
            raise ValidationError(f"unknown workflow type '{workflow_type}'") from exc
        if isinstance(config, Mapping):
            payload = {**config, "workflow_type": expected.value}
            try:
                config = parse_config(payload)
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    "invalid workflow configuration",
                    details={"errors": exc.errors(include_url=False, include_context=False)},
                ) from exc
        if config.workflow_type != expected.value:
            raise ValidationError(
                f"configuration is for '{config.workflow_type}', not '{expected.value}'"
            )
        return config
