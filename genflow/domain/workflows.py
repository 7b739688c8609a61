from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class WorkflowType(str, Enum):
    IMAGE_ONLY = "image-only"
    COMPLETE = "complete"
    VIDEO_FROM_IMAGE = "video-from-image"


class WorkflowStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED})


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepKind(str, Enum):
    ENHANCE_PROMPT = "enhance_prompt"
    GENERATE_IMAGE = "generate_image"
    GENERATE_VIDEO = "generate_video"


@dataclass(frozen=True)
class StepDefinition:
    kind: StepKind
    name: str
    # Provider whose credential the step consumes.
    provider: str


ENHANCE_PROMPT = StepDefinition(StepKind.ENHANCE_PROMPT, "Enhance prompt", "openai")
GENERATE_IMAGE = StepDefinition(StepKind.GENERATE_IMAGE, "Generate image", "image_gen")
GENERATE_VIDEO = StepDefinition(StepKind.GENERATE_VIDEO, "Generate video", "video_gen")
ALL_STEPS: tuple[StepDefinition, ...] = (ENHANCE_PROMPT, GENERATE_IMAGE, GENERATE_VIDEO)

# Fixed topologies; steps always run in this order.
TOPOLOGIES: dict[WorkflowType, tuple[StepDefinition, ...]] = {
    WorkflowType.IMAGE_ONLY: (ENHANCE_PROMPT, GENERATE_IMAGE),
    WorkflowType.COMPLETE: (ENHANCE_PROMPT, GENERATE_IMAGE, GENERATE_VIDEO),
    WorkflowType.VIDEO_FROM_IMAGE: (GENERATE_VIDEO,),
}


def steps_for(workflow_type: WorkflowType | str) -> tuple[StepDefinition, ...]:
    return TOPOLOGIES[WorkflowType(workflow_type)]


def required_providers(workflow_type: WorkflowType | str) -> list[str]:
    # Preserve topology order and drop duplicates.
    seen: list[str] = []
    for step in steps_for(workflow_type):
        if step.provider not in seen:
            seen.append(step.provider)
    return seen


class ImageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    style: Literal["natural", "vivid"] = "vivid"
    quality: Literal["standard", "hd"] = "hd"
    size: Literal["1024x1024", "1792x1024", "1024x1792"] = "1024x1792"


class VideoConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: Literal[5, 8, 15, 30, 60] = 8
    resolution: Literal["720p", "1080p", "4k"] = "1080p"
    generate_audio: bool = True
    motion_intensity: Literal["low", "medium", "high"] = "medium"


class _BaseConfig(BaseModel):
    # Reject unknown fields so each variant carries exactly its own payload.
    model_config = ConfigDict(extra="forbid", frozen=True)


class ImageOnlyConfig(_BaseConfig):
    workflow_type: Literal["image-only"] = "image-only"
    prompt: str = Field(min_length=10, max_length=2000)
    image_config: ImageConfig = Field(default_factory=ImageConfig)


class CompleteConfig(_BaseConfig):
    workflow_type: Literal["complete"] = "complete"
    prompt: str = Field(min_length=10, max_length=2000)
    video_prompt: str | None = Field(default=None, max_length=1000)
    image_config: ImageConfig = Field(default_factory=ImageConfig)
    video_config: VideoConfig = Field(default_factory=VideoConfig)


class VideoFromImageConfig(_BaseConfig):
    workflow_type: Literal["video-from-image"] = "video-from-image"
    image_url: str
    video_prompt: str | None = Field(default=None, max_length=1000)
    video_config: VideoConfig = Field(default_factory=VideoConfig)

    @field_validator("image_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("image_url must be an http(s) URL")
        return value


WorkflowConfig = Annotated[
    Union[ImageOnlyConfig, CompleteConfig, VideoFromImageConfig],
    Field(discriminator="workflow_type"),
]

_CONFIG_ADAPTER: TypeAdapter[Any] = TypeAdapter(WorkflowConfig)


def parse_config(payload: dict[str, Any]) -> ImageOnlyConfig | CompleteConfig | VideoFromImageConfig:
    # Raises pydantic.ValidationError; callers translate to the domain error.
    return _CONFIG_ADAPTER.validate_python(payload)


def step_payload(config: ImageOnlyConfig | CompleteConfig | VideoFromImageConfig, kind: StepKind) -> dict[str, Any]:
    """Return the slice of the configuration a single step consumes."""
    if kind is StepKind.ENHANCE_PROMPT:
        return {"prompt": config.prompt, "context": "image"}
    if kind is StepKind.GENERATE_IMAGE:
        return config.image_config.model_dump()
    payload = config.video_config.model_dump()
    if config.video_prompt:
        payload["prompt"] = config.video_prompt
    return payload
