from __future__ import annotations

from typing import Final, Mapping


# Credits per prompt enhancement call; 2 makes the default image-only and
# complete workflows admit at 7 and 25 credits.
ENHANCE_PROMPT_CREDITS: Final[int] = 2
ENHANCE_PROMPT_SECONDS: Final[int] = 10

# quality -> size -> credits
IMAGE_CREDITS: Final[Mapping[str, Mapping[str, int]]] = {
    "standard": {"1024x1024": 2, "1792x1024": 3, "1024x1792": 3},
    "hd": {"1024x1024": 3, "1792x1024": 5, "1024x1792": 5},
}
IMAGE_SECONDS: Final[Mapping[str, int]] = {"standard": 30, "hd": 45}

# duration seconds -> resolution -> credits
VIDEO_CREDITS: Final[Mapping[int, Mapping[str, int]]] = {
    5: {"720p": 8, "1080p": 12, "4k": 25},
    8: {"720p": 10, "1080p": 15, "4k": 30},
    15: {"720p": 18, "1080p": 25, "4k": 50},
    30: {"720p": 35, "1080p": 50, "4k": 100},
    60: {"720p": 70, "1080p": 100, "4k": 200},
}
# Audio adds a fraction of the base video cost, rounded up.
VIDEO_AUDIO_SURCHARGE_NUM: Final[int] = 1
VIDEO_AUDIO_SURCHARGE_DEN: Final[int] = 5
VIDEO_BASE_SECONDS: Final[int] = 60
VIDEO_SECONDS_PER_CLIP_SECOND: Final[int] = 10
VIDEO_4K_TIME_FACTOR: Final[int] = 2


def image_credits(quality: str, size: str) -> int:
    try:
        return IMAGE_CREDITS[quality][size]
    except KeyError as exc:
        raise KeyError(f"no image price for quality={quality} size={size}") from exc


def video_credits(duration: int, resolution: str, generate_audio: bool) -> int:
    try:
        base = VIDEO_CREDITS[duration][resolution]
    except KeyError as exc:
        raise KeyError(f"no video price for duration={duration} resolution={resolution}") from exc
    if not generate_audio:
        return base
    # Integer ceil keeps the surcharge exact.
    surcharge = -(-base * VIDEO_AUDIO_SURCHARGE_NUM // VIDEO_AUDIO_SURCHARGE_DEN)
    return base + surcharge


def video_seconds(duration: int, resolution: str) -> int:
    seconds = VIDEO_BASE_SECONDS + VIDEO_SECONDS_PER_CLIP_SECOND * duration
    if resolution == "4k":
        seconds *= VIDEO_4K_TIME_FACTOR
    return seconds
