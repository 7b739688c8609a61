from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Iterable

from genflow.domain.workflows import StepKind
from genflow.providers.generation.base import KeyCheck, ProviderResult


class FakeGenerationProvider:
    def __init__(
        self,
        kind: StepKind,
        *,
        error: str | None = None,
        delay_s: float = 0.0,
        rejected_keys: Iterable[str] = (),
    ) -> None:
        # Deterministic outputs allow tests to assert without external services.
        self.kind = kind
        self.name = f"fake.{kind.value}"
        self._error = error
        self._delay_s = delay_s
        self._rejected_keys = frozenset(rejected_keys)
        self.calls: list[dict[str, Any]] = []

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        self.calls.append(dict(step_config))
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._error is not None:
            return ProviderResult(success=False, error=self._error)
        return ProviderResult(success=True, output=_fake_output(self.kind, step_config))

    async def check_key(self, credential: str) -> KeyCheck:
        if credential in self._rejected_keys:
            return KeyCheck(valid=False, message=f"{self.name} rejected the API key")
        return KeyCheck(valid=True, message=f"{self.name} accepted the API key")


def _digest(value: Any) -> str:
    return hashlib.sha256(repr(sorted(value.items())).encode("utf-8")).hexdigest()[:12]


def _fake_output(kind: StepKind, step_config: dict[str, Any]) -> dict[str, Any]:
    if kind is StepKind.ENHANCE_PROMPT:
        prompt = str(step_config.get("prompt", ""))
        return {"enhanced_prompt": f"{prompt}, cinematic lighting, highly detailed", "tokens_used": len(prompt)}
    token = _digest(step_config)
    if kind is StepKind.GENERATE_IMAGE:
        width, height = (int(part) for part in str(step_config.get("size", "1024x1024")).split("x"))
        return {"image_url": f"https://fake.local/images/{token}.png", "width": width, "height": height}
    return {
        "video_url": f"https://fake.local/videos/{token}.mp4",
        "thumbnail_url": step_config.get("image_url"),
        "duration": step_config.get("duration"),
        "resolution": step_config.get("resolution"),
        "has_audio": bool(step_config.get("generate_audio")),
    }
