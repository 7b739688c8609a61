from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from genflow.core.config import Settings
from genflow.core.errors import ProviderFailure
from genflow.providers.generation.base import KeyCheck, ProviderResult, key_check_from_response
from genflow.services.resilience import RetryPolicy, retry_async, retry_policy_from_settings


logger = logging.getLogger(__name__)

_PENDING_STATUSES = {"IN_QUEUE", "IN_PROGRESS"}
# Status lookups for this id can never match a real request.
_KEY_CHECK_REQUEST_ID = "00000000-0000-0000-0000-000000000000"


class FalVideoGenerator:
    """Image-to-video through the fal.ai queue API.

    The request is submitted once, then its status is polled until it
    completes, fails, or the poll budget runs out. Submission is retried only
    under the adapter's retry policy; polling reads are idempotent and share
    the same policy.
    """

    name = "fal.video"

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._retry_policy = retry_policy or retry_policy_from_settings(settings)
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=60.0)
        return self._client

    async def _request(self, method: str, url: str, credential: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        client = self._get_client()
        headers = {"Authorization": f"Key {credential}"}

        async def _call() -> httpx.Response:
            response = await client.request(method, url, json=payload, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        return await retry_async(_call, policy=self._retry_policy, name=self.name)

    async def generate(self, credential: str, step_config: dict[str, Any]) -> ProviderResult:
        base_url = self._settings.fal_base_url.rstrip("/")
        model = self._settings.fal_video_model
        payload = {
            "prompt": step_config.get("prompt") or "Animate this image with natural motion",
            "image_url": step_config["image_url"],
            "duration": f"{step_config['duration']}s",
            "resolution": step_config["resolution"],
            "generate_audio": bool(step_config.get("generate_audio")),
        }
        try:
            submitted = await self._request("POST", f"{base_url}/{model}", credential, payload)
            if submitted.status_code >= 400:
                return _failure(submitted)
            ticket = submitted.json()
            request_id = ticket["request_id"]
            app_id = _app_id(model)
            status_url = ticket.get("status_url") or f"{base_url}/{app_id}/requests/{request_id}/status"
            response_url = ticket.get("response_url") or f"{base_url}/{app_id}/requests/{request_id}"

            for attempt in range(self._settings.video_poll_max_attempts):
                await self._sleep(self._settings.video_poll_interval_s)
                polled = await self._request("GET", status_url, credential)
                if polled.status_code >= 400:
                    return _failure(polled)
                status = str(polled.json().get("status", "")).upper()
                logger.debug("fal_poll request=%s attempt=%s status=%s", request_id, attempt + 1, status)
                if status == "COMPLETED":
                    break
                if status not in _PENDING_STATUSES:
                    return ProviderResult(success=False, error=f"{self.name} job {request_id} ended with status {status}")
            else:
                return ProviderResult(success=False, error=f"{self.name} job {request_id} timed out while polling")

            fetched = await self._request("GET", response_url, credential)
            if fetched.status_code >= 400:
                return _failure(fetched)
            body = fetched.json()
        except httpx.HTTPError as exc:
            logger.warning("provider_call_failed provider=%s error=%s", self.name, type(exc).__name__)
            return ProviderResult(success=False, error=f"{self.name} request failed: {type(exc).__name__}")
        except (KeyError, ValueError):
            return ProviderResult(success=False, error=f"{self.name} returned an unexpected response")

        video = body.get("video") if isinstance(body, dict) else None
        if not isinstance(video, dict) or not video.get("url"):
            return ProviderResult(success=False, error=f"{self.name} job {request_id} returned no video")
        return ProviderResult(
            success=True,
            output={
                "video_url": video["url"],
                "thumbnail_url": body.get("thumbnail", {}).get("url") if isinstance(body.get("thumbnail"), dict) else step_config["image_url"],
                "request_id": request_id,
                "duration": step_config["duration"],
                "resolution": step_config["resolution"],
                "has_audio": bool(step_config.get("generate_audio")),
            },
        )

    async def check_key(self, credential: str) -> KeyCheck:
        # fal authenticates before resolving the request id, so an unknown id
        # answers 404 for a good key and 401/403 for a bad one without queueing work.
        app_id = _app_id(self._settings.fal_video_model)
        url = f"{self._settings.fal_base_url.rstrip('/')}/{app_id}/requests/{_KEY_CHECK_REQUEST_ID}/status"
        try:
            response = await self._request("GET", url, credential)
        except httpx.HTTPError as exc:
            logger.warning("key_check_failed provider=%s error=%s", self.name, type(exc).__name__)
            raise ProviderFailure(f"{self.name} key check failed: {type(exc).__name__}") from exc
        if response.status_code == 404:
            return KeyCheck(valid=True, message=f"{self.name} accepted the API key")
        return key_check_from_response(self.name, response)


def _app_id(model: str) -> str:
    # fal serves queue status under the app id, without the endpoint sub-path.
    return "/".join(model.split("/")[:2])


def _failure(response: httpx.Response) -> ProviderResult:
    if response.status_code in {401, 403}:
        return ProviderResult(success=False, error=f"fal.video rejected the API key ({response.status_code})")
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    return ProviderResult(success=False, error=f"fal.video error {response.status_code}: {detail or response.reason_phrase}")
