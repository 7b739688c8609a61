from __future__ import annotations

import logging
from typing import Any

import httpx

from genflow.core.config import Settings
from genflow.core.errors import ProviderFailure
from genflow.providers.generation.base import KeyCheck, ProviderResult, key_check_from_response
from genflow.services.resilience import RetryPolicy, retry_async, retry_policy_from_settings


logger = logging.getLogger(__name__)

_ENHANCE_SYSTEM_PROMPT = (
    "You rewrite short creative briefs into detailed prompts for an image model. "
    "Keep the subject, add composition, lighting, lens and style details, and "
    "answer with the rewritten prompt only."
)


class _OpenAIAdapter:
    name = "openai"

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._retry_policy = retry_policy or retry_policy_from_settings(settings)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per adapter for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.provider_timeout_s)
        return self._client

    async def _request(
        self, credential: str, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> httpx.Response:
        client = self._get_client()
        headers = {"Authorization": f"Bearer {credential}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}{path}"

        async def _call() -> httpx.Response:
            response = await client.request(method, url, json=payload, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        return await retry_async(_call, policy=self._retry_policy, name=self.name)

    def _failure(self, response: httpx.Response) -> ProviderResult:
        if response.status_code in {401, 403}:
            return ProviderResult(success=False, error=f"{self.name} rejected the API key ({response.status_code})")
        message = _error_message(response)
        return ProviderResult(success=False, error=f"{self.name} error {response.status_code}: {message}")

    async def check_key(self, credential: str) -> KeyCheck:
        # Listing models costs nothing and only needs an accepted key.
        try:
            response = await self._request(credential, "GET", "/models")
        except httpx.HTTPError as exc:
            logger.warning("key_check_failed provider=%s error=%s", self.name, type(exc).__name__)
            raise ProviderFailure(f"{self.name} key check failed: {type(exc).__name__}") from exc
        return key_check_from_response(self.name, response)


class OpenAIPromptEnhancer(_OpenAIAdapter):
    name = "openai.chat"

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        payload = {
            "model": self._settings.openai_text_model,
            "temperature": 0.7,
            "messages": [
                {"role": "system", "content": _ENHANCE_SYSTEM_PROMPT},
                {"role": "user", "content": step_config["prompt"]},
            ],
        }
        try:
            response = await self._request(credential, "POST", "/chat/completions", payload)
        except httpx.HTTPError as exc:
            logger.warning("provider_call_failed provider=%s error=%s", self.name, type(exc).__name__)
            return ProviderResult(success=False, error=f"{self.name} request failed: {type(exc).__name__}")
        if response.status_code >= 400:
            return self._failure(response)
        body = response.json()
        try:
            enhanced = body["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError):
            return ProviderResult(success=False, error=f"{self.name} returned an unexpected response")
        if not enhanced:
            return ProviderResult(success=False, error=f"{self.name} returned an empty prompt")
        tokens = (body.get("usage") or {}).get("total_tokens")
        return ProviderResult(success=True, output={"enhanced_prompt": enhanced, "tokens_used": tokens})


class OpenAIImageGenerator(_OpenAIAdapter):
    name = "openai.images"

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        payload = {
            "model": self._settings.openai_image_model,
            "prompt": step_config["prompt"],
            "n": 1,
            "size": step_config["size"],
            "quality": step_config["quality"],
            "style": step_config["style"],
        }
        try:
            response = await self._request(credential, "POST", "/images/generations", payload)
        except httpx.HTTPError as exc:
            logger.warning("provider_call_failed provider=%s error=%s", self.name, type(exc).__name__)
            return ProviderResult(success=False, error=f"{self.name} request failed: {type(exc).__name__}")
        if response.status_code >= 400:
            return self._failure(response)
        body = response.json()
        try:
            image = body["data"][0]
            image_url = image["url"]
        except (KeyError, IndexError, TypeError):
            return ProviderResult(success=False, error=f"{self.name} returned no image")
        width, height = (int(part) for part in step_config["size"].split("x"))
        return ProviderResult(
            success=True,
            output={
                "image_url": image_url,
                "revised_prompt": image.get("revised_prompt"),
                "width": width,
                "height": height,
            },
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or "request failed"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("detail"):
            return str(body["detail"])
    return response.reason_phrase or "request failed"
