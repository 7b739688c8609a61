from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from genflow.core.errors import ProviderFailure


@dataclass(frozen=True)
class ProviderResult:
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    # Provider-reported cost, informational; billing uses the estimator tables.
    cost: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class KeyCheck:
    valid: bool
    message: str


class GenerationProvider(Protocol):
    """One generation step backed by an external service.

    Expected failures come back as ``ProviderResult(success=False)``; an
    adapter may also raise ProviderFailure, which fails the step the same way.
    """

    name: str

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        ...


class KeyValidator(Protocol):
    name: str

    async def check_key(self, credential: str) -> KeyCheck:
        """Return a verdict on the key, or raise ProviderFailure when the provider cannot say."""
        ...


def key_check_from_response(name: str, response: httpx.Response) -> KeyCheck:
    if response.is_success:
        return KeyCheck(valid=True, message=f"{name} accepted the API key")
    if response.status_code in {401, 403}:
        return KeyCheck(valid=False, message=f"{name} rejected the API key ({response.status_code})")
    # Rate limits and server errors say nothing about the key itself.
    raise ProviderFailure(
        f"{name} could not check the API key ({response.status_code})",
        details={"provider": name, "status_code": response.status_code},
    )
